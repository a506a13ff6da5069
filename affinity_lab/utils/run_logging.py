"""
Run-level logging utility.

Writes every log record emitted during one laboratory run to
<log_root>/laboratory/<run_id>/logs/app.log so a batch can be reviewed after
the worker that ran it has gone away.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class RunLogHandler:
    """
    Context manager for run-level file logging.

    Attaches a FileHandler to the root logger for the duration of the run
    and removes it again on exit.
    """

    def __init__(self, run_id: str, log_root: Path):
        """
        Initialize run log handler.

        Args:
            run_id: Unique run identifier
            log_root: Root directory under which laboratory run logs live
        """
        self.run_id = run_id
        self.log_dir = Path(log_root) / "laboratory" / run_id / "logs"
        self.log_file = self.log_dir / "app.log"
        self.file_handler: Optional[logging.FileHandler] = None
        self.root_logger = logging.getLogger()

    def __enter__(self):
        """Set up file logging for this run."""
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            # Append: an async run spans several invocations
            self.file_handler = logging.FileHandler(self.log_file, mode='a', encoding='utf-8')
            self.file_handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
            self.file_handler.setLevel(self.root_logger.level or logging.INFO)
            self.root_logger.addHandler(self.file_handler)

            start_time = datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')
            self.root_logger.info("=" * 80)
            self.root_logger.info(f"Run started: {self.run_id}")
            self.root_logger.info(f"Start time: {start_time}")
            self.root_logger.info("=" * 80)
        except OSError as e:
            # Non-blocking: if log setup fails, warn and continue
            logger.warning(f"Failed to initialize run logging for {self.run_id}: {e}")
            self.file_handler = None
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Clean up file logging for this run."""
        if not self.file_handler:
            return
        try:
            end_time = datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')
            self.root_logger.info("=" * 80)
            if exc_type is None:
                self.root_logger.info(f"Run step finished: {self.run_id}")
            else:
                self.root_logger.error(f"Run failed: {self.run_id} - {exc_type.__name__}: {exc_val}")
            self.root_logger.info(f"End time: {end_time}")
            self.root_logger.info("=" * 80)
            self.file_handler.flush()
            self.file_handler.close()
        finally:
            self.root_logger.removeHandler(self.file_handler)
            self.file_handler = None

    def get_log_path(self) -> Optional[Path]:
        """Get the path to the log file, if it was created."""
        if self.log_file.exists():
            return self.log_file
        return None
