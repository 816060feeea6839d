"""Bounded retry with increasing delays and epoch-based cancellation."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from ..config import Settings
from ..errors import SetupCancelled, SetupFailed, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay <= 0:
            raise ValueError("base_delay must be positive")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(max_attempts=settings.retry_max_attempts, base_delay=settings.retry_base_delay)

    def delay_after(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based): 1x, 2x, 3x..."""

        return self.base_delay * attempt


class EpochCounter:
    """Generation counter bumped on every conversation switch."""

    def __init__(self) -> None:
        self._epoch = 0

    @property
    def current(self) -> int:
        return self._epoch

    def advance(self) -> int:
        self._epoch += 1
        return self._epoch

    def token(self) -> "CancellationToken":
        return CancellationToken(self, self._epoch)


class CancellationToken:
    """Captures an epoch; cancelled as soon as the counter moves past it."""

    __slots__ = ("_counter", "epoch")

    def __init__(self, counter: EpochCounter, epoch: int) -> None:
        self._counter = counter
        self.epoch = epoch

    @property
    def cancelled(self) -> bool:
        return self._counter.current != self.epoch

    def raise_if_cancelled(self, stage: str) -> None:
        if self.cancelled:
            raise SetupCancelled(f"{stage} setup cancelled (epoch {self.epoch} superseded)")


class RetryScheduler:
    """Run a setup operation, retrying only :class:`TransientError` failures."""

    def __init__(self, policy: RetryPolicy | None = None, *, sleep: Sleep = asyncio.sleep) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        token: CancellationToken,
        stage: str,
    ) -> T:
        """Return the first successful result of ``operation``.

        Raises :class:`SetupFailed` once ``max_attempts`` transient failures
        have happened, :class:`SetupCancelled` when ``token`` is superseded
        before the next attempt, and re-raises any non-transient error
        untouched. A successful result is returned even if the token was
        cancelled while it was in flight; callers own the epoch check.
        """

        policy = self.policy
        attempts = 0

        def _before(retry_state: RetryCallState) -> None:
            nonlocal attempts
            token.raise_if_cancelled(stage)
            attempts = retry_state.attempt_number

        def _before_sleep(retry_state: RetryCallState) -> None:
            logger.warning(
                "%s setup attempt %d/%d failed (%s); retrying in %.2fs",
                stage,
                retry_state.attempt_number,
                policy.max_attempts,
                retry_state.outcome.exception(),
                retry_state.next_action.sleep,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_incrementing(start=policy.base_delay, increment=policy.base_delay),
            # A switch after a failure ends the run without another backoff.
            retry=retry_if_exception(lambda exc: isinstance(exc, TransientError) and not token.cancelled),
            before=_before,
            before_sleep=_before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            return await retrying(operation)
        except TransientError as exc:
            if token.cancelled:
                raise SetupCancelled(f"{stage} setup cancelled after attempt {attempts}") from exc
            logger.warning("%s setup failed after %d attempt(s): %s", stage, attempts, exc)
            raise SetupFailed(stage, attempts, exc) from exc


__all__ = ["RetryPolicy", "EpochCounter", "CancellationToken", "RetryScheduler", "Sleep"]
