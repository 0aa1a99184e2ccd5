"""
Bounded retry and timeout around record store calls.

Every persistence call of a session goes through call_with_retry() so that a
hung or flaky store can never leave a submission (in particular an
auto-submit) waiting forever.
"""

import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, Optional

from .errors import ExamError, PersistenceFailure


DEFAULT_ATTEMPTS = 3
DEFAULT_TIMEOUT = 10.0
DEFAULT_BACKOFF = 0.5

# Errors worth another try; every other ExamError is a final answer
TRANSIENT_ERRORS = (PersistenceFailure, OSError, TimeoutError)


def _run_with_timeout(fn: Callable[..., Any], timeout: Optional[float], *args, **kwargs) -> Any:
    if timeout is None:
        return fn(*args, **kwargs)

    executor = ThreadPoolExecutor(max_workers=1)
    try:
        future = executor.submit(fn, *args, **kwargs)
        return future.result(timeout=timeout)
    except FutureTimeout:
        raise TimeoutError(f"Call did not complete within {timeout:.1f}s")
    finally:
        # Never wait for a hung call; it finishes (or not) in the background
        executor.shutdown(wait=False)


def call_with_retry(
    fn: Callable[..., Any],
    *args,
    attempts: int = DEFAULT_ATTEMPTS,
    timeout: Optional[float] = DEFAULT_TIMEOUT,
    backoff: float = DEFAULT_BACKOFF,
    label: str = "",
    session_logger: Optional[Callable[[str, str], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs
) -> Any:
    """
    Call a persistence function with a per-try timeout and bounded retries.

    Args:
        fn: Function to call
        attempts: Maximum number of tries (at least 1)
        timeout: Seconds to wait for each try, None to wait indefinitely
        backoff: Base delay between tries; try n waits backoff * n
        label: Name of the operation, used in log entries
        session_logger: Optional callable(event, details)
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever fn returns

    Raises:
        PersistenceFailure: When every try failed with a transient error
        ExamError: Domain errors (AttemptsExhausted, ...) are raised at once
    """
    attempts = max(1, attempts)
    name = label or getattr(fn, "__name__", "call")
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return _run_with_timeout(fn, timeout, *args, **kwargs)
        except TRANSIENT_ERRORS as e:
            last_error = e
            if session_logger:
                session_logger(
                    "PERSISTENCE_RETRY",
                    f"{name} failed (try {attempt}/{attempts}): {e}"
                )
            if attempt < attempts and backoff > 0:
                sleep(backoff * attempt)
        except ExamError:
            raise

    raise PersistenceFailure(
        f"{name} failed after {attempts} tries: {last_error}"
    ) from last_error
