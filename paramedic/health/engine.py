"""Health check engine: tests, trigger cycles and running statistics.

A Test pairs a user-supplied probe with its scheduling options, current
Status and statistics. Each trigger hands the probe two completion handles:

    def probe(done, warn):
        done()                  # pass
        done("boom")            # error outcome
        warn("slow response")   # warning outcome

Probes may also be coroutine functions; the scheduler drives the returned
awaitable and applies the outcome once a handle is called.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any

from ..config import OverlapPolicy

if TYPE_CHECKING:
    from .collection import Collection

logger = logging.getLogger(__name__)

# Bound of the per-test recent error log
MAX_RECENT_ERRORS = 10

Probe = Callable[..., Any]
Clock = Callable[[], float]


# ── Errors ───────────────────────────────────────────────────────────────────


class ConfigurationError(ValueError):
    """Raised when a test, collection or option is registered with bad values."""


class ProbeError(Exception):
    """Structured error reported by a probe through a completion handle."""

    def __init__(self, message: str, detail: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class ProbeTimeoutError(ProbeError):
    """A probe did not report an outcome before its deadline."""


def normalize_error(err: Any) -> BaseException | None:
    """Turn whatever a probe handed to done/warn into an exception (or None)."""
    if err is None:
        return None
    if isinstance(err, BaseException):
        return err
    if isinstance(err, str):
        return ProbeError(err)
    return ProbeError(str(err), detail=err)


def error_message(err: BaseException | None) -> str | None:
    if err is None:
        return None
    return getattr(err, "message", None) or str(err) or type(err).__name__


# ── Models ───────────────────────────────────────────────────────────────────


class Status(IntEnum):
    UNTESTED = -1
    STABLE = 0
    WARN = 1
    ERROR = 2

    @property
    def severity(self) -> int:
        return int(self.value)

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]

    @property
    def shortcode(self) -> str:
        return _STATUS_SHORTCODES[self]


_STATUS_LABELS = {
    Status.UNTESTED: "Untested",
    Status.STABLE: "Stable",
    Status.WARN: "Warning",
    Status.ERROR: "Error",
}

_STATUS_SHORTCODES = {
    Status.UNTESTED: "untested",
    Status.STABLE: "stable",
    Status.WARN: "warn",
    Status.ERROR: "err",
}


class OutcomeKind(str, Enum):
    """Which completion handle resolved a trigger."""

    ERROR = "error"  # done()
    WARN = "warn"  # warn()


@dataclass(frozen=True)
class TriggerOutcome:
    """Result of one completed trigger cycle."""

    kind: OutcomeKind
    error: BaseException | None
    duration_ms: float

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class ErrorRecord:
    """Entry of a test's bounded recent-error log."""

    level: str  # "error" | "warn"
    error: BaseException
    time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def message(self) -> str:
        return error_message(self.error) or ""


class IdGenerator:
    """Monotonic test id source, owned by a Server and shared with its collections."""

    def __init__(self, start: int = 0) -> None:
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            return next(self._counter)


def _monotonic_ms() -> float:
    return time.perf_counter() * 1000


def validate_registration(name: Any, probe: Any, what: str = "probe") -> None:
    if not isinstance(name, str) or not name.strip():
        raise ConfigurationError(f"A non-empty name is required, got {name!r}")
    if not callable(probe):
        raise ConfigurationError(f"{what} for {name!r} must be callable, got {type(probe).__name__}")


def is_positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


# ── Trigger cycle ────────────────────────────────────────────────────────────


class TriggerCycle:
    """One execution of a test's probe, from invocation to outcome.

    The bound ``done`` and ``warn`` methods are the completion handles given
    to the probe. Only the first completion counts; later calls are logged
    and ignored so the statistics stay consistent.
    """

    def __init__(
        self,
        test: Test,
        on_outcome: Callable[[TriggerOutcome], Any] | None = None,
    ) -> None:
        self.test = test
        self.started_ms = test.clock()
        self.started_at = datetime.now(timezone.utc)
        self.outcome: TriggerOutcome | None = None
        self.pending: Awaitable[Any] | None = None
        self.task: asyncio.Task[None] | None = None
        self.abandoned = False
        self._on_outcome = on_outcome
        self._waiter: asyncio.Future[None] | None = None

    @property
    def settled(self) -> bool:
        return self.outcome is not None

    def done(self, err: Any = None) -> None:
        self._settle(OutcomeKind.ERROR, err)

    def warn(self, err: Any = None) -> None:
        self._settle(OutcomeKind.WARN, err)

    def expire(self, timeout_ms: float) -> None:
        """Resolve a still-pending cycle as an error once its deadline passed."""
        if self.settled:
            return
        self.done(ProbeTimeoutError(f"Probe did not complete within {timeout_ms:g}ms"))

    def abandon(self) -> None:
        """Drop a cycle that will never be waited on (server stopped).

        Nothing is recorded; the test is no longer counted as in flight and
        later handle calls are ignored.
        """
        if self.settled or self.abandoned:
            return
        self.abandoned = True
        self.test.in_flight = max(0, self.test.in_flight - 1)
        if self.pending is not None:
            discard_awaitable(self.pending)
            self.pending = None

    async def wait(self) -> None:
        """Drive the probe's awaitable (if any) and wait for a completion handle."""
        if self.pending is not None:
            pending, self.pending = self.pending, None
            try:
                await pending
            except Exception as exc:
                self.done(exc)
        if self.settled:
            return
        self._waiter = asyncio.get_running_loop().create_future()
        await self._waiter

    def _settle(self, kind: OutcomeKind, err: Any) -> None:
        if self.abandoned:
            logger.debug("Test %s (%s): outcome after stop, ignoring", self.test.id, self.test.name)
            return
        if self.outcome is not None:
            logger.warning(
                "Test %s (%s): completion handle called again after %s, ignoring",
                self.test.id, self.test.name, self.outcome.kind.value,
            )
            return

        self.outcome = self.test._record(kind, normalize_error(err), self.started_ms)

        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(None)

        if self._on_outcome is not None:
            self._on_outcome(self.outcome)


# ── Test ─────────────────────────────────────────────────────────────────────


class Test:
    """A named, schedulable unit wrapping one probe callback."""

    __test__ = False  # not a pytest class

    def __init__(
        self,
        test_id: int,
        name: str,
        probe: Probe,
        *,
        collection: Collection | None = None,
        clock: Clock | None = None,
    ) -> None:
        validate_registration(name, probe)
        self.id = test_id
        self.name = name
        self.probe = probe
        self.collection = collection
        self.clock: Clock = clock or _monotonic_ms
        self.options: dict[str, Any] = {}
        self.status = Status.UNTESTED

        self.errors: list[ErrorRecord] = []

        self.last_error: BaseException | None = None
        self.last_error_message: str | None = None
        self.last_error_time: datetime | None = None
        self.last_test_time: datetime | None = None
        self.last_test_length: float | None = None

        self.avg_test_length = 0.0

        self.pass_count = 0
        self.warn_count = 0
        self.error_count = 0
        self.total_count = 0
        self.skipped_count = 0
        self.in_flight = 0

    def __repr__(self) -> str:
        return f"<Test id={self.id} name={self.name!r} status={self.status.shortcode}>"

    # -- options ---------------------------------------------------------------

    @property
    def interval(self) -> float | None:
        return self.options.get("interval")

    @property
    def timeout(self) -> float | None:
        return self.options.get("timeout")

    @property
    def overlap(self) -> OverlapPolicy | None:
        return self.options.get("overlap")

    def set_interval(self, ms: Any) -> Test:
        """Set the scheduling interval in milliseconds.

        Anything that is not a positive number is ignored; the test then runs
        at its collection's or the server's default interval.
        """
        if not is_positive_number(ms):
            logger.warning("Test %s (%s): ignoring invalid interval %r", self.id, self.name, ms)
            return self
        self.options["interval"] = ms
        return self

    def set_timeout(self, ms: Any) -> Test:
        """Deadline for a single trigger in milliseconds; 0 disables it."""
        if not (is_positive_number(ms) or (ms == 0 and not isinstance(ms, bool))):
            raise ConfigurationError(f"Timeout for {self.name!r} must be a non-negative number, got {ms!r}")
        self.options["timeout"] = ms
        return self

    def set_overlap(self, policy: OverlapPolicy | str) -> Test:
        try:
            self.options["overlap"] = OverlapPolicy(policy)
        except ValueError as e:
            raise ConfigurationError(f"Unknown overlap policy for {self.name!r}: {policy!r}") from e
        return self

    # -- triggering ------------------------------------------------------------

    def trigger(self, on_outcome: Callable[[TriggerOutcome], Any] | None = None) -> TriggerCycle:
        """Invoke the probe once and return the cycle tracking its outcome.

        Synchronous probes usually settle the cycle before this returns. A
        probe that raises is recorded as ``done(exc)``. An awaitable returned
        by the probe is left on ``cycle.pending`` for the caller to drive.
        """
        cycle = TriggerCycle(self, on_outcome)
        self.last_test_time = cycle.started_at
        self.in_flight += 1

        try:
            result = self.probe(cycle.done, cycle.warn)
        except Exception as exc:
            logger.debug("Test %s (%s): probe raised %r", self.id, self.name, exc)
            cycle.done(exc)
            return cycle

        if inspect.isawaitable(result):
            if cycle.settled:
                # Completed before yielding control; nothing left to wait for.
                discard_awaitable(result)
            else:
                cycle.pending = result
        return cycle

    def _record(self, kind: OutcomeKind, error: BaseException | None, started_ms: float) -> TriggerOutcome:
        self.in_flight = max(0, self.in_flight - 1)
        self.total_count += 1
        self.last_test_length = self.clock() - started_ms
        n = self.total_count
        self.avg_test_length = self.avg_test_length * (n - 1) / n + self.last_test_length * (1 / n)

        if error is not None:
            if kind is OutcomeKind.ERROR:
                self.error_count += 1
            else:
                self.warn_count += 1
            self.errors.insert(0, ErrorRecord(level=kind.value, error=error))
            del self.errors[MAX_RECENT_ERRORS:]
        else:
            self.pass_count += 1

        return TriggerOutcome(kind=kind, error=error, duration_ms=self.last_test_length)

    def record_error_fields(self, error: BaseException) -> None:
        self.last_error = error
        self.last_error_message = error_message(error)
        self.last_error_time = datetime.now(timezone.utc)


def discard_awaitable(result: Any) -> None:
    close = getattr(result, "close", None)
    if inspect.iscoroutine(result) and close is not None:
        close()
