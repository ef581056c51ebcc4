"""Bounded, jittered retry for transient storage failures.

Only :class:`~gis_ingest.core.errors.RetrievalError` instances flagged as
``transient`` are retried. Conversion and load failures are deterministic
for a given input and are never retried here.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import Any, TypeVar

from gis_ingest.core import errors

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_transient(
    func: Callable[..., T],
    max_retries: int,
    backoff_factor: float,
    *args: Any,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """Call ``func`` and retry it while it raises a transient RetrievalError.

    Args:
        func: Callable to invoke.
        max_retries: Retries after the first attempt.
        backoff_factor: Base of the exponential upper bound for the wait.
        *args: Positional arguments for ``func``.
        sleep: Sleep function, replaceable in tests.
        **kwargs: Keyword arguments for ``func``.

    Returns:
        Whatever ``func`` returns.

    Raises:
        RetrievalError: The last error once retries are exhausted, or
            immediately for non-transient failures.
    """
    name = getattr(func, "__name__", str(func))
    retries = 0
    while True:
        try:
            return func(*args, **kwargs)
        except errors.RetrievalError as exc:
            if not exc.transient or retries >= max_retries:
                if exc.transient:
                    logger.error(
                        "%s failed after %d retries: %s",
                        name,
                        max_retries,
                        exc,
                    )
                raise
            retries += 1
            wait_time = random.uniform(0, backoff_factor**retries)
            logger.warning(
                "%s hit a transient error (%s), retrying in %.1f s (%d/%d)",
                name,
                exc,
                wait_time,
                retries,
                max_retries,
            )
            sleep(wait_time)
