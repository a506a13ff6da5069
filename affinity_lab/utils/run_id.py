"""
Run ID generation for laboratory runs.

Run ids key the per-run log directory and the temporary tables created by
asynchronous batch runs, so they must be safe inside SQL identifiers.
"""

import re
import logging
from typing import Optional

import shortuuid

logger = logging.getLogger(__name__)

_RUN_ALPHABET = "23456789abcdefghijkmnopqrstuvwxyz"
_IDENTIFIER_UNSAFE = re.compile(r"[^a-zA-Z0-9_]")


def generate_run_id(length: Optional[int] = None) -> str:
    """
    Generate a short, unique run identifier.

    Uses a lowercase shortuuid alphabet so the id can be embedded in table
    names without quoting.

    Args:
        length: Optional length (minimum 10). Defaults to 16.

    Returns:
        Run id string (e.g., "k3n8q2vz7xw4m9pa")
    """
    if length is None:
        length = 16
    if length < 10:
        raise ValueError("Run ID length must be at least 10 characters")
    return shortuuid.ShortUUID(alphabet=_RUN_ALPHABET).random(length=length)


def identifier_safe(value: str) -> str:
    """Replace every character that is not valid in a bare SQL identifier."""
    return _IDENTIFIER_UNSAFE.sub("_", value)
