"""
Progress reporting and Server-Sent Events streaming.

The orchestrator reports ProgressEvents through a plain callback. For
streamed runs, ProgressStream runs the analysis on a worker thread and
turns its events into SSE frames. The worker never depends on the consumer:
when the client disconnects the generator is closed, events are dropped and
the analysis runs to completion (and persists its results).
"""

import json
import logging
import queue
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterator, Optional

logger = logging.getLogger(__name__)

EVENT_STARTED = "started"
EVENT_PROGRESS = "progress"
EVENT_RESULT = "result"
EVENT_ERROR = "error"


@dataclass
class ProgressEvent:
    phase: str
    percent: int
    message: str
    current: int = 0
    total: int = 0
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


ProgressCallback = Callable[[ProgressEvent], None]


def no_progress(event: ProgressEvent) -> None:
    pass


def format_sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


HEARTBEAT_FRAME = ": heartbeat\n\n"

_DONE = object()


@dataclass
class _Frame:
    event: str
    data: Any = field(default=None)


class ProgressStream:
    """
    Runs work(report) on a daemon thread and yields SSE frames for it.

    Args:
        run_id: announced in the 'started' event
        work: callable receiving a ProgressCallback and returning the result payload
        heartbeat_seconds: idle interval after which a heartbeat comment is sent
    """

    def __init__(self, run_id: str, work: Callable[[ProgressCallback], Any], heartbeat_seconds: float = 15):
        self.run_id = run_id
        self.work = work
        self.heartbeat_seconds = heartbeat_seconds
        self._queue: "queue.Queue" = queue.Queue()
        self._closed = threading.Event()
        self.thread: Optional[threading.Thread] = None

    def _emit(self, frame) -> None:
        if not self._closed.is_set():
            self._queue.put(frame)

    def _report(self, event: ProgressEvent) -> None:
        self._emit(_Frame(EVENT_PROGRESS, event.to_dict()))

    def _run(self) -> None:
        try:
            result = self.work(self._report)
            self._emit(_Frame(EVENT_RESULT, {"results": result}))
        except Exception as e:
            # Surfaced to the client; the run itself has already recorded the failure
            logger.error(f"Streamed run {self.run_id} failed: {type(e).__name__}: {e}")
            self._emit(_Frame(EVENT_ERROR, {"message": str(e)}))
        finally:
            self._emit(_DONE)

    def start(self) -> None:
        self.thread = threading.Thread(target=self._run, name=f"lab-run-{self.run_id}", daemon=True)
        self.thread.start()

    def close(self) -> None:
        """Stop queueing frames; the worker keeps running."""
        self._closed.set()

    def frames(self) -> Iterator[str]:
        if self.thread is None:
            self.start()
        try:
            yield format_sse(EVENT_STARTED, {"run_id": self.run_id})
            while True:
                try:
                    frame = self._queue.get(timeout=self.heartbeat_seconds)
                except queue.Empty:
                    yield HEARTBEAT_FRAME
                    continue
                if frame is _DONE:
                    return
                yield format_sse(frame.event, frame.data)
        finally:
            self.close()
