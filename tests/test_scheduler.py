import asyncio

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

import slot_monitor.browser as browser_module
from fakes import (
    FakeChromium,
    FakeController,
    FakeEngine,
    FakePlaywrightManager,
    make_session,
    make_slot,
)
from slot_monitor.browser import BrowserController
from slot_monitor.config import BrowserConfig, RetryConfig, SchedulerConfig
from slot_monitor.errors import SessionValidationError
from slot_monitor.retry import RetryPolicy
from slot_monitor.scheduler import SessionScheduler, SessionStore

URL = "https://booking.example.com/qmatic"


def _scheduler(engine, cfg, no_sleep, *, controller=None, on_results=None) -> SessionScheduler:
    retry = RetryPolicy(
        (controller or FakeController()).restart,
        RetryConfig(max_attempts=1, base_delay=0),
        sleep=no_sleep,
    )
    return SessionScheduler(
        engine,
        retry,
        controller or FakeController(),
        cfg,
        interval=lambda now: 3600.0,
        on_results=on_results,
    )


@pytest.mark.asyncio
async def test_successful_check_replaces_previous_result(scheduler_cfg, no_sleep) -> None:
    first, second = [make_slot(hour=9)], [make_slot(hour=10)]
    engine = FakeEngine(default=[first, second])
    scheduler = _scheduler(engine, scheduler_cfg, no_sleep)
    session_id = await scheduler.start_session(URL, ["Danvers"])

    await scheduler.run_cycle()
    await scheduler.run_cycle()

    session = scheduler.store.get(session_id)
    assert session.last_result == second
    assert session.checks_count == 2
    assert session.last_success_at == session.last_checked_at


@pytest.mark.asyncio
async def test_failed_check_keeps_previous_result(scheduler_cfg, no_sleep) -> None:
    slots = [make_slot()]
    engine = FakeEngine(default=[slots, PlaywrightTimeoutError("Timeout 10000ms exceeded.")])
    scheduler = _scheduler(engine, scheduler_cfg, no_sleep)
    session_id = await scheduler.start_session(URL, ["Danvers"])

    await scheduler.run_cycle()
    session = scheduler.store.get(session_id)
    succeeded_at = session.last_success_at
    report = await scheduler.run_cycle()

    assert report.failed == 1
    assert session.last_result == slots
    assert session.last_success_at == succeeded_at
    assert session.last_checked_at >= succeeded_at
    assert session.last_error.startswith("TimeoutError:")
    assert session.consecutive_failures == 1


@pytest.mark.asyncio
async def test_stopped_session_discards_in_flight_result(scheduler_cfg, no_sleep) -> None:
    engine = FakeEngine(default=[[make_slot()]])
    engine.gate = asyncio.Event()
    scheduler = _scheduler(engine, scheduler_cfg, no_sleep)
    session_id = await scheduler.start_session(URL, ["Danvers"])
    session = scheduler.store.get(session_id)

    cycle = asyncio.create_task(scheduler.run_cycle())
    await asyncio.wait_for(engine.started.wait(), 1)
    assert scheduler.stop_session() == 1
    engine.gate.set()
    await cycle

    assert session.last_result == []
    assert session.last_checked_at is None
    assert len(scheduler.store) == 0


@pytest.mark.asyncio
async def test_start_session_replaces_existing_sessions(scheduler_cfg, no_sleep) -> None:
    scheduler = _scheduler(FakeEngine(), scheduler_cfg, no_sleep)
    first = await scheduler.start_session(URL, ["Danvers"])
    second = await scheduler.start_session(URL, ["Boston"])

    assert first != second
    assert first not in scheduler.store
    assert second in scheduler.store
    assert len(scheduler.store) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "url, names",
    [
        ("", ["Danvers"]),
        ("ftp://booking.example.com", ["Danvers"]),
        ("not a url", ["Danvers"]),
        (URL, []),
        (URL, ["  ", ""]),
    ],
)
async def test_start_session_validates_request(scheduler_cfg, no_sleep, url, names) -> None:
    scheduler = _scheduler(FakeEngine(), scheduler_cfg, no_sleep)
    with pytest.raises(SessionValidationError):
        await scheduler.start_session(url, names)
    assert len(scheduler.store) == 0


@pytest.mark.asyncio
async def test_stop_session_counts(scheduler_cfg, no_sleep) -> None:
    scheduler = _scheduler(FakeEngine(), scheduler_cfg, no_sleep)
    session_id = await scheduler.start_session(URL, ["Danvers"])

    assert scheduler.stop_session("session_unknown") == 0
    assert scheduler.stop_session(session_id) == 1
    assert scheduler.stop_session() == 0


@pytest.mark.asyncio
async def test_failures_are_isolated_per_session(scheduler_cfg, no_sleep) -> None:
    engine = FakeEngine(
        outcomes={
            "session_a": [PlaywrightTimeoutError("Timeout")],
            "session_b": [[make_slot("2")]],
        }
    )
    scheduler = _scheduler(engine, scheduler_cfg, no_sleep)
    scheduler.store.add(make_session("session_a"))
    scheduler.store.add(make_session("session_b"))

    report = await scheduler.run_cycle()

    assert engine.calls == ["session_a", "session_b"]
    assert (report.processed, report.succeeded, report.failed) == (2, 1, 1)
    assert scheduler.store.get("session_b").last_result[0].location_id == "2"
    assert scheduler.store.get("session_a").last_error is not None


@pytest.mark.asyncio
async def test_immediate_check_after_start(no_sleep) -> None:
    cfg = SchedulerConfig(immediate_check=True, immediate_check_delay=0)
    engine = FakeEngine(default=[[make_slot()]])
    scheduler = _scheduler(engine, cfg, no_sleep)

    session_id = await scheduler.start_session(URL, ["Danvers"])
    await scheduler.drain()

    assert engine.calls == [session_id]
    assert len(scheduler.store.get(session_id).last_result) == 1


@pytest.mark.asyncio
async def test_results_are_passed_to_consumer(scheduler_cfg, no_sleep) -> None:
    received = []

    async def consumer(session, slots) -> None:
        received.append((session.session_id, len(slots)))
        raise RuntimeError("telegram down")

    engine = FakeEngine(default=[[make_slot(), make_slot(hour=11)]])
    scheduler = _scheduler(engine, scheduler_cfg, no_sleep, on_results=consumer)
    session_id = await scheduler.start_session(URL, ["Danvers"])

    report = await scheduler.run_cycle()

    assert received == [(session_id, 2)]
    assert report.succeeded == 1


@pytest.mark.asyncio
async def test_status_and_health(scheduler_cfg, no_sleep) -> None:
    controller = FakeController(healthy=False)
    engine = FakeEngine(default=[[make_slot()]])
    scheduler = _scheduler(engine, scheduler_cfg, no_sleep, controller=controller)
    session_id = await scheduler.start_session(URL, ["Danvers", "Boston"])
    await scheduler.run_cycle()

    [status] = scheduler.status()
    assert status.session_id == session_id
    assert status.locations_count == 2
    assert status.slots_found == 1

    health = await scheduler.health()
    assert health.status == "unhealthy"
    assert health.active_sessions == 1
    assert health.error == "Target closed"


@pytest.mark.asyncio
async def test_loop_runs_cycle_and_stops(scheduler_cfg, no_sleep) -> None:
    engine = FakeEngine()
    scheduler = _scheduler(engine, scheduler_cfg, no_sleep)
    await scheduler.start_session(URL, ["Danvers"])

    await scheduler.start()
    assert scheduler.is_running
    await asyncio.wait_for(engine.started.wait(), 1)
    await scheduler.stop()

    assert not scheduler.is_running
    assert scheduler.cycles_count == 1


def test_store_rejects_duplicate_ids() -> None:
    store = SessionStore()
    store.add(make_session("session_x"))
    with pytest.raises(KeyError):
        store.add(make_session("session_x"))
    assert store.is_current(store.get("session_x"))
    assert not store.is_current(make_session("session_x"))


@pytest.mark.asyncio
async def test_health_during_cycle_reuses_last_measurement(scheduler_cfg, no_sleep) -> None:
    controller = FakeController()
    engine = FakeEngine(default=[[make_slot()]])
    engine.gate = asyncio.Event()
    scheduler = _scheduler(engine, scheduler_cfg, no_sleep, controller=controller)
    await scheduler.start_session(URL, ["Danvers"])

    cycle = asyncio.create_task(scheduler.run_cycle())
    await asyncio.wait_for(engine.started.wait(), 1)
    busy = await scheduler.health()
    engine.gate.set()
    await cycle

    assert controller.health_checks == 0
    assert busy.browser_ok and busy.active_sessions == 1

    idle = await scheduler.health()
    assert controller.health_checks == 1
    assert idle.last_latency_ms == 12.0


class LeasingEngine:
    """Holds a real page lease until released."""

    def __init__(self, controller: BrowserController) -> None:
        self.controller = controller
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def process(self, session):
        async with self.controller.lease_page():
            self.started.set()
            await self.gate.wait()
        return []


@pytest.mark.asyncio
async def test_health_does_not_restart_browser_under_running_check(
    monkeypatch: pytest.MonkeyPatch, scheduler_cfg, no_sleep
) -> None:
    chromium = FakeChromium()
    monkeypatch.setattr(browser_module, "async_playwright", lambda: FakePlaywrightManager(chromium))
    controller = BrowserController(BrowserConfig(health_timeout_ms=500))
    await controller.initialize()
    in_use = chromium.launched[0]
    in_use.goto_error = PlaywrightTimeoutError("Timeout 500ms exceeded.")

    engine = LeasingEngine(controller)
    retry = RetryPolicy(controller.restart, RetryConfig(max_attempts=1, base_delay=0), sleep=no_sleep)
    scheduler = SessionScheduler(engine, retry, controller, scheduler_cfg, interval=lambda now: 3600.0)
    await scheduler.start_session(URL, ["Danvers"])

    cycle = asyncio.create_task(scheduler.run_cycle())
    await asyncio.wait_for(engine.started.wait(), 1)
    await scheduler.health()
    engine.gate.set()
    report = await cycle

    assert in_use.connected
    assert controller.restarts == 0
    assert report.succeeded == 1
