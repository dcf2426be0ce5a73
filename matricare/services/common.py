"""
Shared building blocks for the engine services.

Key pieces:
- Structured logging setup (structlog over the stdlib logger factory)
- Result type for expected, per-attempt failures
- Cancellation token passed explicitly into every suspension point
- Circuit breaker used for the degraded-mode signal on model load failures
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Generic, Literal, TypeVar

import structlog

from matricare.domain.errors import OperationCancelledError


def _processors(fmt: Literal["json", "console"]) -> list:
    renderer = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]


def configure_logging(
    level: str = "INFO", fmt: Literal["json", "console"] = "json"
) -> None:
    """Configure structlog and the stdlib root logger it writes through."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, level, logging.INFO))
    logging.getLogger().setLevel(getattr(logging, level, logging.INFO))
    structlog.configure(
        processors=_processors(fmt),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


configure_logging()

logger = structlog.get_logger("matricare")

ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException)


class Result(Generic[ValueT, ErrorT]):
    """
    Outcome of one attempt that is allowed to fail.

    The sync queue returns these from each delivery attempt so a flaky
    network is a value to branch on; bugs still raise.
    """

    __slots__ = ("_value", "_error")

    def __init__(self, value: ValueT | None = None, error: ErrorT | None = None) -> None:
        if (value is None) == (error is None):
            raise ValueError("Result holds exactly one of value or error")
        self._value = value
        self._error = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return not self.is_ok()

    def unwrap(self) -> ValueT:
        if self._error is not None:
            raise self._error
        return self._value  # type: ignore[return-value]

    def unwrap_or(self, default: ValueT) -> ValueT:
        return default if self.is_err() else self._value  # type: ignore[return-value]

    def unwrap_err(self) -> ErrorT:
        if self._error is None:
            raise ValueError("unwrap_err() on a successful Result")
        return self._error


T = TypeVar("T")


class CancellationToken:
    """
    Cooperative cancellation handle owned by the caller.

    The caller keeps the token and calls ``cancel()`` when it abandons the
    request (e.g. the user navigates away). Services pass the awaitable they
    are suspended on through ``run()``, which raises OperationCancelledError as
    soon as the token fires.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelledError(self.reason or "cancelled")

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first."""
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work in done:
            return work.result()
        work.cancel()
        raise OperationCancelledError(self.reason or "cancelled")


class CircuitBreakerState:
    """
    Failure counter guarding an expensive operation (loading the model bundle).

    closed: calls allowed. open: calls refused until ``recovery_timeout``
    seconds after the last failure. half-open: one trial call; a failure
    reopens immediately, a success closes.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        recovery_timeout: int = 300,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.clock = clock or (lambda: datetime.now(UTC))
        self.failure_count = 0
        self.last_failure_time: datetime | None = None
        self.state: Literal["closed", "open", "half-open"] = "closed"

    @property
    def retry_at(self) -> datetime | None:
        if self.state != "open" or self.last_failure_time is None:
            return None
        return self.last_failure_time + timedelta(seconds=self.recovery_timeout)

    def can_execute(self) -> bool:
        if self.state != "open":
            return True
        retry_at = self.retry_at
        if retry_at is not None and self.clock() >= retry_at:
            self.state = "half-open"
            return True
        return False

    def record_success(self) -> None:
        self.failure_count = 0
        self.state = "closed"

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self.clock()
        if self.state == "half-open" or self.failure_count >= self.failure_threshold:
            self.state = "open"
