"""Paramedic server: owns tests and collections and runs them at intervals.

Each armed test gets its own asyncio task that sleeps for the test's
interval and triggers it. After every completed trigger the outcome is
reduced against the test's current status and the resulting lifecycle
event is emitted through the server's EventBus.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from functools import partial
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ..config import OverlapPolicy, Settings, settings
from .collection import Collection, RegistrationCallback
from .engine import (
    Clock,
    IdGenerator,
    OutcomeKind,
    Probe,
    ProbeError,
    Status,
    Test,
    TriggerCycle,
    TriggerOutcome,
    discard_awaitable,
    is_positive_number,
)
from .events import EventBus, Handler, LifecycleEvent
from .view import StatusView

logger = logging.getLogger(__name__)


class StartOptions(BaseModel):
    """Options accepted by Server.start; unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    test_now: bool = Field(False, alias="testNow")
    title: str | None = None


def _by_field_name(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Rewrite StartOptions aliases (``testNow``) to field names so merges don't shadow each other."""
    data = dict(raw)
    for name, field in StartOptions.model_fields.items():
        if field.alias and field.alias in data:
            data[name] = data.pop(field.alias)
    return data


def reduce_status(prior: Status, outcome: TriggerOutcome) -> tuple[Status, LifecycleEvent | None]:
    """Decide the new status and the event to emit for a completed trigger."""
    if outcome.error is None:
        if prior in (Status.ERROR, Status.WARN):
            return Status.STABLE, LifecycleEvent.RECOVER
        return Status.STABLE, LifecycleEvent.PASS

    if outcome.kind is OutcomeKind.ERROR and prior is not Status.ERROR:
        return Status.ERROR, LifecycleEvent.ERROR
    if outcome.kind is OutcomeKind.WARN and prior is not Status.WARN:
        return Status.WARN, LifecycleEvent.WARN

    # Persisting failure: no duplicate notification
    return prior, None


class Server:
    """Aggregate root: top-level tests, collections and the trigger loop.

    Lifecycle:
        server = Server()
        server.register_test("db", probe).set_interval(10_000)
        view = await server.start({"test_now": True})
        ...
        await server.stop()
    """

    def __init__(
        self,
        config: Settings | None = None,
        *,
        ids: IdGenerator | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.settings = config or settings
        self.tests: list[Test] = []
        self.collections: list[Collection] = []
        self.events = EventBus()
        self.title = self.settings.title
        self.started = False
        self._ids = ids or IdGenerator()
        self._clock = clock
        self._running = False
        self._armed: dict[int, asyncio.Task[None]] = {}
        self._inflight: dict[asyncio.Task[None], TriggerCycle] = {}

    @property
    def defaults(self) -> dict[str, Any]:
        return {
            "interval": self.settings.default_interval_ms,
            "timeout": self.settings.probe_timeout_ms,
            "overlap": self.settings.overlap_policy,
        }

    # -- registration ----------------------------------------------------------

    def register_test(self, name: str, probe: Probe) -> Test:
        """Create a top-level test. Use the returned Test to set its options."""
        test = Test(self._ids.next_id(), name, probe, clock=self._clock)
        self.tests.append(test)
        logger.debug("Registered test %s (%s)", test.id, name)
        return test

    def register_collection(
        self,
        name: str,
        callback: RegistrationCallback,
        entries: Any = (),
        options: Mapping[str, Any] | None = None,
    ) -> Collection:
        """Create a collection; any ``entries`` are added straight away."""
        collection = Collection(name, callback, options=options, ids=self._ids, clock=self._clock)
        self.collections.append(collection)
        collection.add_all(entries)
        logger.debug("Registered collection %s (%d tests)", name, len(collection.tests))
        return collection

    def on(self, event: LifecycleEvent | str, handler: Handler | None = None) -> Any:
        """Subscribe to a lifecycle event; usable as a decorator when ``handler`` is omitted."""
        if handler is None:
            return lambda fn: self.events.subscribe(event, fn)
        return self.events.subscribe(event, handler)

    def off(self, event: LifecycleEvent | str, handler: Handler) -> bool:
        return self.events.unsubscribe(event, handler)

    # -- lookup ----------------------------------------------------------------

    def list_all_tests(self) -> list[Test]:
        """Every collection's tests (registration order) followed by top-level tests."""
        tests: list[Test] = []
        for collection in self.collections:
            tests.extend(collection.tests)
        tests.extend(self.tests)
        return tests

    def find_test_by_id(self, test_id: int | str) -> Test | None:
        try:
            wanted = int(test_id)
        except (TypeError, ValueError):
            return None
        return next((t for t in self.list_all_tests() if t.id == wanted), None)

    def effective_interval(self, test: Test) -> float:
        """Test interval, else its collection's, else the server default (ms)."""
        if test.interval is not None:
            return test.interval
        if test.collection is not None and is_positive_number(test.collection.interval):
            return test.collection.interval
        return self.settings.default_interval_ms

    def timeout_for(self, test: Test) -> float:
        if test.timeout is not None:
            return test.timeout
        return self.settings.probe_timeout_ms

    def overlap_for(self, test: Test) -> OverlapPolicy:
        return test.overlap or self.settings.overlap_policy

    def is_armed(self, test: Test) -> bool:
        return test.id in self._armed

    # -- lifecycle -------------------------------------------------------------

    async def start(
        self,
        options: StartOptions | Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> StatusView:
        """Arm a repeating trigger for every test and return the status view.

        Tests armed by an earlier call are left alone, so calling start again
        only picks up tests registered since.
        """
        if isinstance(options, StartOptions):
            base = options.model_dump(exclude_unset=True)
        else:
            base = dict(options or {})
        opts = StartOptions.model_validate({**_by_field_name(base), **_by_field_name(overrides)})

        if opts.title:
            self.title = opts.title

        if self.started:
            logger.warning("Paramedic server has been started more than once")

        self.started = True
        self._running = True

        armed = 0
        for test in self.list_all_tests():
            if test.id in self._armed:
                continue
            interval = self.effective_interval(test)
            if opts.test_now:
                self.trigger_test(test)
            self._armed[test.id] = asyncio.create_task(
                self._tick_loop(test, interval),
                name=f"paramedic-test-{test.id}",
            )
            armed += 1

        logger.info(
            "Paramedic server started: %d tests armed (%d collections, %d total)",
            armed, len(self.collections), len(self._armed),
        )
        return StatusView(self)

    async def stop(self) -> None:
        """Cancel every tick loop and in-flight trigger.

        Cancelled cycles are abandoned so their tests are no longer counted
        as in flight when the server is started again.
        """
        self._running = False
        cycles = list(self._inflight.values())
        tasks = [*self._armed.values(), *self._inflight]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for cycle in cycles:
            cycle.abandon()
        self._armed.clear()
        self._inflight.clear()
        self.started = False
        logger.info("Paramedic server stopped")

    async def run_all_now(self, timeout_ms: float | None = None) -> list[Test]:
        """Trigger every test immediately and wait for the outcomes.

        Each test waits at most ``timeout_ms``, else its own timeout, else
        ``run_all_timeout_ms``; a test still pending by then settles as a
        ProbeTimeoutError.
        """
        tests = self.list_all_tests()
        cycles = [
            self.trigger_test(
                test,
                timeout_ms=timeout_ms if timeout_ms is not None
                else self.timeout_for(test) or self.settings.run_all_timeout_ms,
            )
            for test in tests
        ]
        pending = [c.task for c in cycles if c is not None and c.task is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return tests

    # -- triggering ------------------------------------------------------------

    def trigger_test(self, test: Test, *, timeout_ms: float | None = None) -> TriggerCycle | None:
        """Trigger ``test`` once and apply its outcome when it arrives. Never raises."""
        if test.in_flight and self.overlap_for(test) is OverlapPolicy.SKIP:
            test.skipped_count += 1
            logger.warning(
                "Test %s (%s): previous trigger still in flight, skipping tick",
                test.id, test.name,
            )
            return None

        try:
            cycle = test.trigger(partial(self._apply_outcome, test))
        except Exception:
            logger.exception("Failed to trigger test %s (%s)", test.id, test.name)
            return None

        if not cycle.settled:
            deadline = self.timeout_for(test) if timeout_ms is None else timeout_ms
            self._supervise(test, cycle, deadline)
        return cycle

    def _supervise(self, test: Test, cycle: TriggerCycle, timeout_ms: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if cycle.pending is not None:
                discard_awaitable(cycle.pending)
                cycle.pending = None
                cycle.done(ProbeError("Async probe triggered without a running event loop"))
            return

        if cycle.pending is None and not timeout_ms:
            # Sync probe holding its handles: nothing to drive, nothing to time out
            return

        cycle.task = loop.create_task(
            self._await_cycle(test, cycle, timeout_ms),
            name=f"paramedic-trigger-{test.id}",
        )
        self._inflight[cycle.task] = cycle
        cycle.task.add_done_callback(lambda task: self._inflight.pop(task, None))

    async def _await_cycle(self, test: Test, cycle: TriggerCycle, timeout_ms: float) -> None:
        try:
            if timeout_ms:
                await asyncio.wait_for(cycle.wait(), timeout_ms / 1000)
            else:
                await cycle.wait()
        except asyncio.TimeoutError:
            logger.warning("Test %s (%s): no outcome after %sms", test.id, test.name, timeout_ms)
            cycle.expire(timeout_ms)

    def _apply_outcome(self, test: Test, outcome: TriggerOutcome) -> None:
        try:
            prior = test.status
            status, event = reduce_status(prior, outcome)
            test.status = status

            if event is None:
                logger.debug("Test %s (%s): still %s", test.id, test.name, status.label)
                return

            if event in (LifecycleEvent.ERROR, LifecycleEvent.WARN):
                test.record_error_fields(outcome.error)
                self.events.emit(event, outcome.error, test)
            else:
                self.events.emit(event, test)

            if status is not prior:
                logger.info(
                    "Test %s (%s): %s → %s",
                    test.id, test.name, prior.label, status.label,
                )
        except Exception:
            logger.exception("Failed to apply outcome for test %s (%s)", test.id, test.name)

    async def _tick_loop(self, test: Test, interval_ms: float) -> None:
        """Persistent loop that triggers a single test at its interval."""
        while self._running:
            try:
                await asyncio.sleep(interval_ms / 1000)
                if not self._running:
                    break
                self.trigger_test(test)
                logger.debug("Tick %s (%s): %s", test.id, test.name, test.status.label)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Tick error for test %s (%s)", test.id, test.name)
