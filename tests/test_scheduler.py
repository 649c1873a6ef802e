"""Tests for the Paramedic server: state machine, lookup and scheduling."""

from __future__ import annotations

import asyncio
import logging

import pytest

from paramedic.config import OverlapPolicy, Settings
from paramedic.health.engine import (
    ConfigurationError,
    OutcomeKind,
    ProbeError,
    ProbeTimeoutError,
    Status,
    TriggerOutcome,
)
from paramedic.health.events import LifecycleEvent
from paramedic.health.scheduler import Server, StartOptions, reduce_status
from paramedic.health.view import StatusView


def _outcome(kind: OutcomeKind, error: str | None = None) -> TriggerOutcome:
    return TriggerOutcome(kind=kind, error=ProbeError(error) if error else None, duration_ms=1.0)


def _names(events) -> list[str]:
    return [name for name, _ in events]


# ── State machine ────────────────────────────────────────────────────────────


class TestReduceStatus:
    @pytest.mark.parametrize(
        ("prior", "kind", "error", "expected", "event"),
        [
            (Status.UNTESTED, OutcomeKind.ERROR, None, Status.STABLE, LifecycleEvent.PASS),
            (Status.STABLE, OutcomeKind.WARN, None, Status.STABLE, LifecycleEvent.PASS),
            (Status.ERROR, OutcomeKind.ERROR, None, Status.STABLE, LifecycleEvent.RECOVER),
            (Status.WARN, OutcomeKind.WARN, None, Status.STABLE, LifecycleEvent.RECOVER),
            (Status.STABLE, OutcomeKind.ERROR, "down", Status.ERROR, LifecycleEvent.ERROR),
            (Status.UNTESTED, OutcomeKind.ERROR, "down", Status.ERROR, LifecycleEvent.ERROR),
            (Status.WARN, OutcomeKind.ERROR, "down", Status.ERROR, LifecycleEvent.ERROR),
            (Status.STABLE, OutcomeKind.WARN, "slow", Status.WARN, LifecycleEvent.WARN),
            (Status.ERROR, OutcomeKind.WARN, "slow", Status.WARN, LifecycleEvent.WARN),
            (Status.ERROR, OutcomeKind.ERROR, "down", Status.ERROR, None),
            (Status.WARN, OutcomeKind.WARN, "slow", Status.WARN, None),
        ],
    )
    def test_transitions(self, prior, kind, error, expected, event) -> None:
        assert reduce_status(prior, _outcome(kind, error)) == (expected, event)


# ── trigger_test ─────────────────────────────────────────────────────────────


class TestTriggerTest:
    def test_first_pass(self, server, probe, events) -> None:
        test = server.register_test("db", probe)
        server.trigger_test(test)
        assert test.status is Status.STABLE
        assert events == [("pass", (test,))]

    def test_stable_pass_emits_pass(self, server, probe, events) -> None:
        test = server.register_test("db", probe)
        server.trigger_test(test)
        server.trigger_test(test)
        assert test.status is Status.STABLE
        assert _names(events) == ["pass", "pass"]

    def test_error_emitted_once(self, server, probe, events) -> None:
        test = server.register_test("db", probe)
        server.trigger_test(test)
        events.clear()

        probe.set("done", "connection refused")
        server.trigger_test(test)
        assert test.status is Status.ERROR
        assert len(events) == 1
        name, (error, emitted_test) = events[0]
        assert name == "error"
        assert emitted_test is test
        assert error.message == "connection refused"

        server.trigger_test(test)
        assert test.status is Status.ERROR
        assert len(events) == 1
        assert test.error_count == 2

    def test_recover_not_pass(self, server, probe, events) -> None:
        test = server.register_test("db", probe)
        probe.set("done", "down")
        server.trigger_test(test)
        events.clear()

        probe.set("done", None)
        server.trigger_test(test)
        assert test.status is Status.STABLE
        assert events == [("recover", (test,))]

    def test_warn_then_recover(self, server, probe, events) -> None:
        test = server.register_test("db", probe)
        probe.set("warn", "slow")
        server.trigger_test(test)
        server.trigger_test(test)
        probe.set("warn", None)
        server.trigger_test(test)
        assert _names(events) == ["warn", "recover"]
        assert test.warn_count == 2

    def test_last_error_fields_set_on_transition(self, server, probe) -> None:
        test = server.register_test("db", probe)
        probe.set("done", "disk full")
        server.trigger_test(test)
        assert test.last_error_message == "disk full"
        assert isinstance(test.last_error, ProbeError)
        assert test.last_error_time is not None

    def test_handler_failure_contained(self, server, probe) -> None:
        seen = []

        def broken(test):
            raise RuntimeError("handler bug")

        server.on("pass", broken)
        server.on("pass", seen.append)
        test = server.register_test("db", probe)
        server.trigger_test(test)
        assert seen == [test]
        assert test.status is Status.STABLE

    def test_on_as_decorator(self, server, probe) -> None:
        seen = []

        @server.on(LifecycleEvent.PASS)
        def record(test):
            seen.append(test.name)

        server.trigger_test(server.register_test("db", probe))
        assert seen == ["db"]

    def test_async_probe_outside_loop_reports_error(self, server) -> None:
        async def probe(done, warn):
            done()

        test = server.register_test("db", probe)
        server.trigger_test(test)
        assert test.status is Status.ERROR
        assert test.in_flight == 0

    def test_skip_overlap_policy(self, server) -> None:
        handles = []
        test = server.register_test("slow", lambda done, warn: handles.append(done))
        test.set_overlap(OverlapPolicy.SKIP)

        assert server.trigger_test(test) is not None
        assert server.trigger_test(test) is None
        assert test.skipped_count == 1

        handles[0]()
        assert test.status is Status.STABLE
        assert server.trigger_test(test) is not None

    def test_allow_overlap_by_default(self, server) -> None:
        handles = []
        test = server.register_test("slow", lambda done, warn: handles.append(done))
        server.trigger_test(test)
        server.trigger_test(test)
        assert len(handles) == 2
        assert test.in_flight == 2


# ── Registration and lookup ──────────────────────────────────────────────────


def _register_pair(collection, entry):
    collection.register_test(entry["name"], lambda done, warn: done())


class TestRegistration:
    def test_register_test_validates(self, server) -> None:
        with pytest.raises(ConfigurationError):
            server.register_test("", lambda done, warn: done())
        with pytest.raises(ConfigurationError):
            server.register_test("db", None)

    def test_register_collection_validates(self, server) -> None:
        with pytest.raises(ConfigurationError):
            server.register_collection("pings", "nope")

    def test_collection_entries_added_immediately(self, server) -> None:
        collection = server.register_collection(
            "pings", _register_pair, entries=[{"name": "a"}, {"name": "b"}],
        )
        assert [t.name for t in collection.tests] == ["a", "b"]
        assert all(t.collection is collection for t in collection.tests)

    def test_ids_unique_across_server(self, server) -> None:
        server.register_collection("pings", _register_pair).add({"name": "a"}).add({"name": "b"})
        server.register_test("top", lambda done, warn: done())
        ids = [t.id for t in server.list_all_tests()]
        assert ids == [0, 1, 2]

    def test_ids_not_shared_between_servers(self, config) -> None:
        first, second = Server(config), Server(config)
        first.register_test("a", lambda done, warn: done())
        assert second.register_test("b", lambda done, warn: done()).id == 0

    def test_list_all_tests_order(self, server) -> None:
        server.register_test("top-1", lambda done, warn: done())
        server.register_collection("c1", _register_pair).add({"name": "c1-a"}).add({"name": "c1-b"})
        server.register_test("top-2", lambda done, warn: done())
        server.register_collection("c2", _register_pair).add({"name": "c2-a"})

        names = [t.name for t in server.list_all_tests()]
        assert names == ["c1-a", "c1-b", "c2-a", "top-1", "top-2"]

    def test_find_test_by_id(self, server) -> None:
        collection = server.register_collection("pings", _register_pair)
        collection.add({"name": "a"}).add({"name": "b"})
        top = server.register_test("top", lambda done, warn: done())

        a, b = collection.tests
        assert server.find_test_by_id(a.id) is a
        assert server.find_test_by_id(b.id) is b
        assert server.find_test_by_id(top.id) is top
        assert server.find_test_by_id(str(top.id)) is top
        assert server.find_test_by_id(99) is None
        assert server.find_test_by_id("abc") is None


class TestEffectiveInterval:
    def test_collection_entries_use_own_interval(self, server) -> None:
        def register(collection, entry):
            collection.register_test(f"ping-{len(collection.tests)}", lambda done, warn: done()).set_interval(
                entry["interval"]
            )

        collection = server.register_collection("pings", register)
        collection.add({"interval": 30000}).add({"interval": 30000}).add({"interval": 30000})

        assert len(collection.tests) == 3
        assert [server.effective_interval(t) for t in collection.tests] == [30000] * 3

    def test_server_default(self, server) -> None:
        test = server.register_test("db", lambda done, warn: done())
        assert server.effective_interval(test) == 5000

    def test_collection_default(self, server) -> None:
        collection = server.register_collection("pings", _register_pair, options={"interval": 12_000})
        collection.add({"name": "a"})
        assert server.effective_interval(collection.tests[0]) == 12_000

    def test_invalid_interval_falls_back(self, server) -> None:
        test = server.register_test("db", lambda done, warn: done()).set_interval(-1)
        assert server.effective_interval(test) == 5000

    def test_defaults_mapping(self, server) -> None:
        assert server.defaults == {"interval": 5000, "timeout": 0, "overlap": OverlapPolicy.ALLOW}


# ── start / stop ─────────────────────────────────────────────────────────────


class TestStart:
    def test_start_returns_view(self, server, probe) -> None:
        server.register_test("db", probe)

        async def scenario():
            view = await server.start({"title": "Ops"})
            await server.stop()
            return view

        view = asyncio.run(scenario())
        assert isinstance(view, StatusView)
        assert view.title == "Ops"
        assert [t.name for t in view.list_all_tests()] == ["db"]

    def test_test_now_triggers_immediately(self, server, probe) -> None:
        test = server.register_test("db", probe)

        async def scenario():
            await server.start({"testNow": True})
            calls = probe.calls
            await server.stop()
            return calls

        assert asyncio.run(scenario()) == 1
        assert test.status is Status.STABLE

    def test_without_test_now_stays_untested(self, server, probe) -> None:
        test = server.register_test("db", probe)

        async def scenario():
            await server.start(unknown_option=True)
            await server.stop()

        asyncio.run(scenario())
        assert probe.calls == 0
        assert test.status is Status.UNTESTED

    def test_ticks_at_interval(self, server, probe) -> None:
        server.register_test("fast", probe).set_interval(10)

        async def scenario():
            await server.start()
            await asyncio.sleep(0.1)
            await server.stop()

        asyncio.run(scenario())
        assert probe.calls >= 2

    def test_double_start_does_not_rearm(self, server, probe, caplog) -> None:
        first = server.register_test("db", probe)

        async def scenario():
            await server.start()
            armed = dict(server._armed)
            late = server.register_test("late", probe)
            with caplog.at_level(logging.WARNING):
                await server.start()
            result = (armed, dict(server._armed), late)
            await server.stop()
            return result

        before, after, late = asyncio.run(scenario())
        assert after[first.id] is before[first.id]
        assert late.id in after
        assert len(after) == 2
        assert "started more than once" in caplog.text

    def test_stop_resets(self, server, probe) -> None:
        test = server.register_test("db", probe)

        async def scenario():
            await server.start()
            assert server.is_armed(test)
            await server.stop()

        asyncio.run(scenario())
        assert not server.started
        assert not server.is_armed(test)

    def test_start_options_model(self) -> None:
        opts = StartOptions.model_validate({"testNow": True, "title": "X", "port": 1})
        assert opts.test_now is True
        assert opts.title == "X"
        assert StartOptions(test_now=True).test_now is True


# ── Async probes and deadlines ───────────────────────────────────────────────


class TestAsyncProbes:
    def test_run_all_now_waits(self, server, events) -> None:
        async def ok(done, warn):
            await asyncio.sleep(0.01)
            done()

        async def failing(done, warn):
            await asyncio.sleep(0.01)
            done("503")

        a = server.register_test("ok", ok)
        b = server.register_test("failing", failing)

        tests = asyncio.run(server.run_all_now())
        assert tests == [a, b]
        assert a.status is Status.STABLE
        assert b.status is Status.ERROR
        assert sorted(_names(events)) == ["error", "pass"]

    def test_timeout_synthesizes_error(self, server) -> None:
        async def hang(done, warn):
            await asyncio.sleep(10)

        test = server.register_test("hang", hang).set_timeout(20)
        asyncio.run(server.run_all_now())
        assert test.status is Status.ERROR
        assert isinstance(test.last_error, ProbeTimeoutError)
        assert test.in_flight == 0

    def test_default_timeout_from_settings(self, clock) -> None:
        server = Server(Settings(_env_file=None, probe_timeout_ms=20), clock=clock)

        async def hang(done, warn):
            await asyncio.sleep(10)

        test = server.register_test("hang", hang)
        asyncio.run(server.run_all_now())
        assert isinstance(test.last_error, ProbeTimeoutError)

    def test_run_all_now_timeout_override(self, server) -> None:
        handles = []
        test = server.register_test("stashed", lambda done, warn: handles.append(done))
        asyncio.run(server.run_all_now(timeout_ms=20))
        assert test.status is Status.ERROR
        assert test.total_count == 1

        handles[0]()  # late completion is ignored
        assert test.total_count == 1

    def test_stalled_probe_does_not_block_ticks(self, server) -> None:
        calls = []

        async def stall(done, warn):
            calls.append(1)
            await asyncio.sleep(10)

        server.register_test("stall", stall).set_interval(10)

        async def scenario():
            await server.start()
            await asyncio.sleep(0.1)
            await server.stop()

        asyncio.run(scenario())
        assert len(calls) >= 2

    def test_async_handler_scheduled(self, server, probe) -> None:
        seen = []

        async def handler(test):
            seen.append(test.name)

        server.on("pass", handler)
        server.register_test("db", probe)

        async def scenario():
            await server.run_all_now()
            await asyncio.sleep(0)

        asyncio.run(scenario())
        assert seen == ["db"]


# ── Stalled probes and restarts ──────────────────────────────────────────────


def _stalled(done, warn):
    pass


class TestStalledProbes:
    def test_stalled_sync_check_without_deadline_spawns_no_tasks(self, server) -> None:
        test = server.register_test("stuck", _stalled).set_interval(5)

        async def scenario():
            await server.start()
            await asyncio.sleep(0.1)
            inflight = len(server._inflight)
            await server.stop()
            return inflight

        assert asyncio.run(scenario()) == 0
        assert test.in_flight >= 2
        assert test.total_count == 0

    def test_stalled_sync_check_with_deadline_expires(self, server) -> None:
        test = server.register_test("stuck", _stalled).set_interval(5).set_timeout(10)

        async def scenario():
            await server.start()
            await asyncio.sleep(0.15)
            inflight = len(server._inflight)
            await server.stop()
            return inflight

        assert asyncio.run(scenario()) < 10
        assert test.error_count >= 2
        assert isinstance(test.last_error, ProbeTimeoutError)

    def test_run_all_now_bounded_without_configured_deadline(self, clock) -> None:
        server = Server(Settings(_env_file=None, run_all_timeout_ms=30), clock=clock)
        test = server.register_test("stuck", _stalled)

        async def scenario():
            return await asyncio.wait_for(server.run_all_now(), 2)

        assert asyncio.run(scenario()) == [test]
        assert test.status is Status.ERROR
        assert isinstance(test.last_error, ProbeTimeoutError)
        assert test.in_flight == 0

    def test_run_all_now_prefers_test_timeout(self, server) -> None:
        test = server.register_test("stuck", _stalled).set_timeout(15)
        asyncio.run(server.run_all_now())
        assert "15ms" in test.last_error_message

    def test_stop_releases_cancelled_cycles(self, server) -> None:
        calls = []

        async def slow(done, warn):
            calls.append(1)
            await asyncio.sleep(0.05)
            done()

        test = server.register_test("slow", slow).set_interval(20).set_timeout(1000)
        test.set_overlap(OverlapPolicy.SKIP)

        async def scenario():
            await server.start(test_now=True)
            await asyncio.sleep(0.01)
            await server.stop()
            released = test.in_flight
            await server.start(test_now=True)
            await asyncio.sleep(0.2)
            await server.stop()
            return released

        assert asyncio.run(scenario()) == 0
        assert len(calls) >= 2
        assert test.status is Status.STABLE
        assert test.total_count >= 1

    def test_stop_before_cycle_runs(self, server) -> None:
        async def slow(done, warn):
            await asyncio.sleep(1)

        test = server.register_test("slow", slow).set_timeout(1000)

        async def scenario():
            await server.start(testNow=True)
            await server.stop()

        asyncio.run(scenario())
        assert test.in_flight == 0
        assert test.total_count == 0

    def test_outcome_after_stop_ignored(self, server) -> None:
        handles = []
        test = server.register_test("stash", lambda done, warn: handles.append(done)).set_timeout(1000)

        async def scenario():
            server.trigger_test(test)
            await asyncio.sleep(0)
            await server.stop()

        asyncio.run(scenario())
        handles[0]("late")
        assert test.total_count == 0
        assert test.status is Status.UNTESTED


class TestStartOptionsMerge:
    def test_alias_override_on_model(self, server, probe) -> None:
        server.register_test("db", probe)

        async def scenario():
            view = await server.start(StartOptions(title="Ops"), testNow=True)
            await server.stop()
            return view

        view = asyncio.run(scenario())
        assert probe.calls == 1
        assert view.title == "Ops"

    def test_override_beats_model_value(self, server, probe) -> None:
        server.register_test("db", probe)

        async def scenario():
            await server.start(StartOptions(test_now=True), testNow=False)
            await server.stop()

        asyncio.run(scenario())
        assert probe.calls == 0

    def test_mapping_alias_and_field_name(self, server, probe) -> None:
        server.register_test("db", probe)

        async def scenario():
            await server.start({"testNow": False}, test_now=True)
            await server.stop()

        asyncio.run(scenario())
        assert probe.calls == 1
