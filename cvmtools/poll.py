"""Bounded polling and retry helpers for externally asynchronous resources."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable, TypeVar

from loguru import logger

from .errors import ResourceNotReadyError

log = logger

T = TypeVar('T')

DEFAULT_POLL_RETRIES = 20
DEFAULT_POLL_INTERVAL = 0.05


def poll_until(
    predicate: Callable[[], bool],
    *,
    retries: int = DEFAULT_POLL_RETRIES,
    interval: float = DEFAULT_POLL_INTERVAL,
    desc: str = 'condition',
    path: str | Path = '',
) -> int:
    """
    Block until ``predicate()`` holds, sleeping ``interval`` between checks.

    At most ``retries`` sleeps are performed, so the wait is bounded by
    ``retries * interval``.

    Returns:
        int: the number of sleeps performed before the predicate held.

    Raises:
        ResourceNotReadyError: if the predicate still fails after the budget.

    Example:
        >>> state = {'n': 0}
        >>> def ready():
        ...     state['n'] += 1
        ...     return state['n'] > 3
        >>> poll_until(ready, interval=0)
        3
    """
    attempt = 0
    while not predicate():
        if attempt >= retries:
            log.debug('Gave up waiting for {} after {} retries', desc, attempt)
            raise ResourceNotReadyError(path or desc, attempt, desc=desc)
        time.sleep(interval)
        attempt += 1
    if attempt:
        log.debug('{} ready after {} retries', desc, attempt)
    return attempt


def wait_for_path(
    path: str | Path,
    *,
    retries: int = DEFAULT_POLL_RETRIES,
    interval: float = DEFAULT_POLL_INTERVAL,
    desc: str = '',
) -> int:
    path = Path(path)
    return poll_until(
        path.exists,
        retries=retries,
        interval=interval,
        desc=desc or f'path {path}',
        path=path,
    )


def retry_call(
    operation: Callable[[int], T],
    *,
    attempts: int,
    interval: float = 0.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    desc: str = 'operation',
) -> T:
    """
    Call ``operation(attempt)`` until it returns without raising ``retry_on``.

    The zero-based attempt index is passed so the operation can resume
    partial work. The last error is re-raised once ``attempts`` are used up.
    """
    if attempts < 1:
        raise ValueError('attempts must be >= 1')
    for attempt in range(attempts):
        try:
            return operation(attempt)
        except retry_on as ex:
            remaining = attempts - attempt - 1
            if not remaining:
                log.error('{} failed after {} attempts: {}', desc, attempts, ex)
                raise
            log.warning(
                '{} failed (attempt {}/{}): {}',
                desc,
                attempt + 1,
                attempts,
                ex,
            )
            if interval:
                time.sleep(interval)
    raise AssertionError('unreachable')
