"""
Error taxonomy and error-handling helpers for the Affinity Laboratory.

Fatal errors propagate out of a run. Best-effort paths (result persistence,
temporary table cleanup, origin batches) go through safe_execute so a failure
is logged instead of raised.
"""

import logging
import traceback
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class LaboratoryError(Exception):
    """Base class for all laboratory errors."""


class ConfigurationError(LaboratoryError):
    """Raised for missing credentials, unsupported countries or invalid settings."""


class QueryExecutionError(LaboratoryError):
    """Raised when the query engine reports a failed or cancelled query."""

    def __init__(self, message: str, handle: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.handle = handle


class QueryTimeoutError(LaboratoryError):
    """Raised when a query does not finish within the poll ceiling."""

    def __init__(self, handle: str, elapsed_seconds: float):
        super().__init__(
            f"Query {handle} did not finish after {elapsed_seconds:.1f}s"
        )
        self.handle = handle
        self.elapsed_seconds = elapsed_seconds


class RunInProgressError(LaboratoryError):
    """Raised when a non-stale run already holds the (dataset, country) key."""

    def __init__(self, run_id: str, dataset_id: str, country: str):
        super().__init__(
            f"Run {run_id} is already in progress for {dataset_id}/{country}"
        )
        self.run_id = run_id
        self.dataset_id = dataset_id
        self.country = country


class UnknownAudienceError(LaboratoryError):
    """Raised when a batch requests an audience id missing from the catalog."""


def safe_execute(
    func: Callable,
    *args,
    default: Any = None,
    error_context: str = "",
    **kwargs
) -> Any:
    """
    Execute a best-effort operation, logging instead of raising on failure.

    Args:
        func: Function to execute
        *args: Positional arguments
        default: Value to return on error
        error_context: Context for error messages
        **kwargs: Keyword arguments

    Returns:
        Function result or default value
    """
    try:
        return func(*args, **kwargs)
    except Exception as e:
        context = f"{error_context}: " if error_context else ""
        logger.warning(f"{context}{type(e).__name__}: {e}")
        logger.debug(f"Error details: {traceback.format_exc()}")
        return default
