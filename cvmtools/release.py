"""Scoped release of acquired host resources with error aggregation."""

from __future__ import annotations

from typing import Any, Callable

from loguru import logger

from .errors import ReleaseError

log = logger


class ReleaseStack:
    """
    Run registered release steps on every exit path, newest first.

    Unlike :class:`contextlib.ExitStack`, a failing release step neither
    stops the remaining steps nor replaces the exception raised by the
    guarded block. Failures are collected in :attr:`errors`; they are
    attached to the in-flight exception, or raised as :class:`ReleaseError`
    when the block itself succeeded.

    Example:
        >>> calls = []
        >>> with ReleaseStack() as stack:
        ...     stack.callback('first', calls.append, 1)
        ...     stack.callback('second', calls.append, 2)
        >>> calls
        [2, 1]
    """

    def __init__(self) -> None:
        self._steps: list[tuple[str, Callable[..., Any], tuple, dict]] = []
        self.errors: list[BaseException] = []

    def callback(
        self, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> None:
        self._steps.append((label, fn, args, kwargs))

    def release(self) -> list[BaseException]:
        while self._steps:
            label, fn, args, kwargs = self._steps.pop()
            log.debug('Releasing: {}', label)
            try:
                fn(*args, **kwargs)
            except Exception as ex:
                log.error('Release step "{}" failed: {}', label, ex)
                self.errors.append(ex)
        return self.errors

    def __enter__(self) -> 'ReleaseStack':
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release()
        if exc is not None:
            if self.errors:
                attach_release_errors(exc, self.errors)
            return False
        if self.errors:
            raise ReleaseError(self.errors)
        return False


def attach_release_errors(
    exc: BaseException, errors: list[BaseException]
) -> None:
    existing = getattr(exc, 'release_errors', None)
    if isinstance(existing, list):
        existing.extend(e for e in errors if e not in existing)
    else:
        exc.release_errors = list(errors)
    for err in errors:
        exc.add_note(f'during cleanup: {err}')
