"""Common utilities and types for manifest orchestration."""

import getpass
import hashlib
import json
import logging
import os
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class NodeResult:
    """Result of running one node through the provider."""
    success: bool
    message: str = ''
    duration: float = 0.0
    outputs: dict = field(default_factory=dict)
    attempts: int = 0
    error: Optional[BaseException] = None


class Cancelled(Exception):
    """Run was cancelled before the call completed."""


def canonical_hash(data: Any) -> str:
    """Stable SHA-256 of JSON-serializable data (key order independent)."""
    encoded = json.dumps(data, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(encoded.encode('utf-8')).hexdigest()


def owner_identity() -> str:
    """Identity used for lock ownership: user@host:pid."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = os.environ.get('USER', 'unknown')
    return f"{user}@{socket.gethostname()}:{os.getpid()}"


def retry_call(
    fn: Callable[[], T],
    attempts: int,
    base_delay: float,
    max_delay: float,
    is_retryable: Callable[[BaseException], bool],
    cancel_event: Optional[threading.Event] = None,
    label: str = '',
) -> tuple[T, int]:
    """Call fn with bounded exponential backoff.

    Returns:
        (result, attempts_used)

    Raises:
        The last exception from fn if attempts are exhausted or the error
        is not retryable; Cancelled if cancel_event is set between attempts.
    """
    attempt = 0
    while True:
        attempt += 1
        if cancel_event is not None and cancel_event.is_set():
            raise Cancelled(f"{label} cancelled before attempt {attempt}")
        try:
            return fn(), attempt
        except Cancelled:
            raise
        except Exception as e:
            if attempt >= attempts or not is_retryable(e):
                # Attach attempt count for callers reporting failures
                setattr(e, 'attempts', attempt)
                raise
            delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
            logger.warning(f"{label} attempt {attempt}/{attempts} failed: {e}; retrying in {delay:.1f}s")
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise Cancelled(f"{label} cancelled during backoff")
            else:
                time.sleep(delay)
