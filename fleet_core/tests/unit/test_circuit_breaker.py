"""Unit tests for fleet_core.resilience.circuit_breaker.

Covers:
- CLOSED -> OPEN -> HALF_OPEN -> CLOSED transitions
- Independent state per key
- Call timeouts and the cancel signal
- Single-trial admission in HALF_OPEN
- Retries counting as one breaker failure
- Listener delivery and stuck-open alerting
- A single OPEN transition under concurrent failures
- Prometheus transition counters and the open gauge
"""

from __future__ import annotations

import asyncio

import pytest
from fleet_core.errors import BreakerTimeoutError, CircuitOpenError
from fleet_core.resilience.circuit_breaker import (
    BreakerEvent,
    BreakerOptions,
    CircuitBreakerRegistry,
    CircuitState,
    breaker_key,
    external_call,
)
from fleet_core.telemetry.metrics import breaker_labels, hash_tenant_id
from prometheus_client import REGISTRY

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


ONE_STRIKE = BreakerOptions(max_failures=1, reset_timeout=10.0, call_timeout=1.0, retries=0)


async def _ok(cancel: asyncio.Event) -> str:
    return "ok"


async def _boom(cancel: asyncio.Event) -> str:
    raise ConnectionError("upstream refused")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock: FakeClock) -> CircuitBreakerRegistry:
    reg = CircuitBreakerRegistry(default_options=ONE_STRIKE, clock=clock)
    yield reg
    reg.close()


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


class TestBreakerKey:
    def test_provider_only(self):
        assert breaker_key("stripe") == "stripe"

    def test_provider_and_tenant(self):
        assert breaker_key("stripe", "t1") == "stripe:t1"

    def test_with_scope(self):
        assert breaker_key("stripe", "t1", "cred-ab12") == "stripe:t1:cred-ab12"


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class TestTransitions:
    @pytest.mark.asyncio
    async def test_open_reject_half_open_close(self, registry, clock):
        with pytest.raises(ConnectionError):
            await registry.call("stripe:t1", _boom)
        assert registry.state_of("stripe:t1") is CircuitState.OPEN

        executed = False

        async def _tracked(cancel: asyncio.Event) -> str:
            nonlocal executed
            executed = True
            return "ok"

        with pytest.raises(CircuitOpenError) as exc_info:
            await registry.call("stripe:t1", _tracked)
        assert executed is False
        assert exc_info.value.retry_after == pytest.approx(10.0)

        clock.advance(10.0)
        assert await registry.call("stripe:t1", _ok) == "ok"
        assert registry.state_of("stripe:t1") is CircuitState.CLOSED
        assert registry.failures_of("stripe:t1") == 0

    @pytest.mark.asyncio
    async def test_failed_trial_reopens(self, registry, clock):
        with pytest.raises(ConnectionError):
            await registry.call("k", _boom)
        clock.advance(10.0)
        with pytest.raises(ConnectionError):
            await registry.call("k", _boom)
        assert registry.state_of("k") is CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await registry.call("k", _ok)

    @pytest.mark.asyncio
    async def test_threshold_counts_consecutive_failures(self, clock):
        reg = CircuitBreakerRegistry(
            default_options=BreakerOptions(max_failures=3, reset_timeout=5.0, call_timeout=1.0, retries=0),
            clock=clock,
        )
        for _ in range(2):
            with pytest.raises(ConnectionError):
                await reg.call("k", _boom)
        assert reg.state_of("k") is CircuitState.CLOSED
        await reg.call("k", _ok)
        assert reg.failures_of("k") == 0
        for _ in range(3):
            with pytest.raises(ConnectionError):
                await reg.call("k", _boom)
        assert reg.state_of("k") is CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_keys_are_isolated(self, registry):
        with pytest.raises(ConnectionError):
            await registry.call("stripe:t1", _boom)
        assert registry.state_of("stripe:t1") is CircuitState.OPEN
        assert await registry.call("stripe:t2", _ok) == "ok"
        assert registry.state_of("stripe:t2") is CircuitState.CLOSED

    def test_unknown_key_reports_closed(self, registry):
        assert registry.state_of("never-used") is CircuitState.CLOSED
        assert registry.failures_of("never-used") == 0

    @pytest.mark.asyncio
    async def test_reset_forces_closed(self, registry):
        with pytest.raises(ConnectionError):
            await registry.call("k", _boom)
        registry.reset("k")
        assert registry.state_of("k") is CircuitState.CLOSED
        assert await registry.call("k", _ok) == "ok"

    @pytest.mark.asyncio
    async def test_snapshot(self, registry):
        await registry.call("a", _ok)
        with pytest.raises(ConnectionError):
            await registry.call("b", _boom)
        snap = registry.snapshot()
        assert snap["a"]["state"] == "closed"
        assert snap["b"]["state"] == "open"
        assert snap["b"]["consecutive_failures"] == 1


# ---------------------------------------------------------------------------
# Timeouts and retries
# ---------------------------------------------------------------------------


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_slow_operation_times_out(self, registry):
        seen: list[asyncio.Event] = []

        async def _slow(cancel: asyncio.Event) -> str:
            seen.append(cancel)
            await asyncio.sleep(1.0)
            return "late"

        opts = BreakerOptions(max_failures=5, call_timeout=0.02, retries=0)
        with pytest.raises(TimeoutError) as exc_info:
            await registry.call("slow", _slow, opts)
        assert isinstance(exc_info.value, BreakerTimeoutError)
        assert "Timeout after" in str(exc_info.value)
        assert seen[0].is_set()
        assert registry.failures_of("slow") == 1

    @pytest.mark.asyncio
    async def test_uncooperative_operation_abandoned(self, registry):
        async def _stubborn(cancel: asyncio.Event) -> str:
            try:
                await asyncio.sleep(1.0)
            except asyncio.CancelledError:
                await asyncio.sleep(0.2)
            return "ignored"

        opts = BreakerOptions(call_timeout=0.02, retries=0)
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(BreakerTimeoutError):
            await registry.call("stubborn", _stubborn, opts)
        assert loop.time() - started < 0.15
        # let the abandoned operation finish before the loop closes
        await asyncio.sleep(0.25)


class TestRetries:
    @pytest.mark.asyncio
    async def test_retry_then_success(self, registry):
        calls = 0

        async def _flaky(cancel: asyncio.Event) -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise ConnectionError("flaky")
            return "ok"

        opts = BreakerOptions(max_failures=1, retries=2)
        assert await registry.call("k", _flaky, opts) == "ok"
        assert calls == 3
        assert registry.state_of("k") is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_exhausted_retries_count_once(self, registry):
        calls = 0

        async def _down(cancel: asyncio.Event) -> str:
            nonlocal calls
            calls += 1
            raise ConnectionError(f"attempt {calls}")

        opts = BreakerOptions(max_failures=2, retries=2)
        with pytest.raises(ConnectionError, match="attempt 3"):
            await registry.call("k", _down, opts)
        assert calls == 3
        assert registry.failures_of("k") == 1
        assert registry.state_of("k") is CircuitState.CLOSED


# ---------------------------------------------------------------------------
# Half-open admission
# ---------------------------------------------------------------------------


class TestHalfOpen:
    @pytest.mark.asyncio
    async def test_single_trial_in_flight(self, registry, clock):
        with pytest.raises(ConnectionError):
            await registry.call("k", _boom)
        clock.advance(10.0)

        gate = asyncio.Event()

        async def _trial(cancel: asyncio.Event) -> str:
            await gate.wait()
            return "trial"

        trial = asyncio.create_task(registry.call("k", _trial))
        await asyncio.sleep(0)
        assert registry.state_of("k") is CircuitState.HALF_OPEN

        with pytest.raises(CircuitOpenError):
            await registry.call("k", _ok)

        gate.set()
        assert await trial == "trial"
        assert registry.state_of("k") is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_trial_frees_slot(self, registry, clock):
        with pytest.raises(ConnectionError):
            await registry.call("k", _boom)
        clock.advance(10.0)

        async def _forever(cancel: asyncio.Event) -> str:
            await asyncio.Event().wait()
            return "never"

        trial = asyncio.create_task(registry.call("k", _forever))
        await asyncio.sleep(0)
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial

        assert await registry.call("k", _ok) == "ok"
        assert registry.state_of("k") is CircuitState.CLOSED


# ---------------------------------------------------------------------------
# Listeners and alerting
# ---------------------------------------------------------------------------


class TestListeners:
    @pytest.mark.asyncio
    async def test_events_delivered_in_order(self, registry, clock):
        events: list[BreakerEvent] = []
        registry.add_listener(events.append)

        with pytest.raises(ConnectionError):
            await registry.call("k", _boom)
        clock.advance(10.0)
        await registry.call("k", _ok)

        assert [e.kind for e in events] == ["open", "half_open", "close"]
        assert all(e.key == "k" for e in events)

    @pytest.mark.asyncio
    async def test_listener_error_does_not_break_call(self, registry, caplog):
        def _bad(event: BreakerEvent) -> None:
            raise RuntimeError("listener bug")

        registry.add_listener(_bad)
        with caplog.at_level("ERROR"):
            with pytest.raises(ConnectionError):
                await registry.call("k", _boom)
        assert registry.state_of("k") is CircuitState.OPEN
        assert "Breaker listener failed" in caplog.text

    @pytest.mark.asyncio
    async def test_removed_listener_not_called(self, registry):
        events: list[BreakerEvent] = []
        registry.add_listener(events.append)
        registry.remove_listener(events.append)
        with pytest.raises(ConnectionError):
            await registry.call("k", _boom)
        assert events == []


class TestStuckOpenAlert:
    @pytest.mark.asyncio
    async def test_alert_logged_while_open(self, clock, caplog):
        reg = CircuitBreakerRegistry(default_options=ONE_STRIKE, open_alert_window=0.05, clock=clock)
        with caplog.at_level("ERROR", logger="fleet_core.resilience.circuit_breaker"):
            with pytest.raises(ConnectionError):
                await reg.call("stripe:t1", _boom)
            await asyncio.sleep(0.08)
        reg.close()
        alerts = [r for r in caplog.records if r.getMessage().startswith("breaker_still_open")]
        assert alerts
        assert alerts[0].context["key"] == "stripe:t1"

    @pytest.mark.asyncio
    async def test_no_alert_after_recovery(self, clock, caplog):
        reg = CircuitBreakerRegistry(default_options=ONE_STRIKE, open_alert_window=0.05, clock=clock)
        with caplog.at_level("ERROR", logger="fleet_core.resilience.circuit_breaker"):
            with pytest.raises(ConnectionError):
                await reg.call("k", _boom)
            clock.advance(10.0)
            await reg.call("k", _ok)
            await asyncio.sleep(0.08)
        reg.close()
        assert "breaker_still_open" not in caplog.text


# ---------------------------------------------------------------------------
# external_call
# ---------------------------------------------------------------------------


class TestExternalCall:
    @pytest.mark.asyncio
    async def test_keyed_by_provider_and_tenant(self, registry):
        with pytest.raises(ConnectionError):
            await external_call("stripe", _boom, tenant_id="t1", registry=registry)
        assert registry.state_of("stripe:t1") is CircuitState.OPEN
        assert await external_call("stripe", _ok, tenant_id="t2", registry=registry) == "ok"


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrentFailures:
    @pytest.mark.asyncio
    async def test_single_open_event_under_concurrent_failures(self, registry):
        events: list[BreakerEvent] = []
        registry.add_listener(events.append)
        opts = BreakerOptions(max_failures=2, reset_timeout=10.0, call_timeout=1.0, retries=0)

        async def _slow_boom(cancel: asyncio.Event) -> str:
            await asyncio.sleep(0.01)
            raise ConnectionError("upstream refused")

        results = await asyncio.gather(
            *(registry.call("k", _slow_boom, opts) for _ in range(6)),
            return_exceptions=True,
        )

        assert all(isinstance(r, ConnectionError) for r in results)
        assert [e.kind for e in events] == ["open"]
        assert registry.state_of("k") is CircuitState.OPEN
        assert registry.failures_of("k") == 6


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


def _sample(name: str, key: str) -> float:
    return REGISTRY.get_sample_value(name, breaker_labels(key)) or 0.0


class TestBreakerMetrics:
    def test_labels_hash_tenant(self):
        labels = breaker_labels("stripe:tenant-42:cred-ab12")
        assert labels["provider"] == "stripe"
        assert labels["tenant"] == hash_tenant_id("tenant-42")
        assert len(labels["tenant"]) == 8
        assert "tenant-42" not in labels["tenant"]

    def test_labels_without_tenant(self):
        assert breaker_labels("geocoder") == {"provider": "geocoder", "tenant": "none"}

    @pytest.mark.asyncio
    async def test_transition_counters_and_gauge(self, registry, clock):
        key = "metrics-transitions:t1"
        opened = _sample("fleet_breaker_open_total", key)
        half_opened = _sample("fleet_breaker_half_open_total", key)
        closed = _sample("fleet_breaker_close_total", key)

        with pytest.raises(ConnectionError):
            await registry.call(key, _boom)
        assert _sample("fleet_breaker_open_total", key) == opened + 1
        assert _sample("fleet_breaker_open_state", key) == 1.0

        clock.advance(10.0)
        await registry.call(key, _ok)
        assert _sample("fleet_breaker_half_open_total", key) == half_opened + 1
        assert _sample("fleet_breaker_close_total", key) == closed + 1
        assert _sample("fleet_breaker_open_state", key) == 0.0

    @pytest.mark.asyncio
    async def test_still_open_counter(self, clock):
        key = "metrics-stuck:t1"
        before = _sample("fleet_breaker_still_open_total", key)
        reg = CircuitBreakerRegistry(default_options=ONE_STRIKE, open_alert_window=0.05, clock=clock)
        with pytest.raises(ConnectionError):
            await reg.call(key, _boom)
        await asyncio.sleep(0.08)
        reg.close()
        assert _sample("fleet_breaker_still_open_total", key) >= before + 1
