"""Keyed circuit breaker for external and tenant-scoped dependencies.

States:
- CLOSED: healthy, calls pass through
- OPEN: failing, calls rejected with :class:`CircuitOpenError` without executing
- HALF_OPEN: ``reset_timeout`` has elapsed; exactly one trial call is admitted

Every key (``provider`` or ``provider:tenant``) owns an independent state
record, created lazily on first use.  The key is always an explicit argument
so that two tenants' dependencies never share failure counts.

Each execution is bounded by ``call_timeout``: the wrapper races the
operation against its own timer, signals the operation's cancel event and
abandons it on expiry, whether or not the operation honours the signal.
A key that stays open longer than the alert window logs
``breaker_still_open`` at ERROR once per window until it leaves OPEN.
Transitions and alert ticks are also exported as Prometheus metrics
(:mod:`fleet_core.telemetry.metrics`).
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from fleet_core.errors import BreakerTimeoutError, CircuitOpenError
from fleet_core.telemetry.metrics import record_breaker_still_open, record_breaker_transition
from fleet_core.telemetry.redaction import redact_error_message

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[asyncio.Event], Awaitable[T]]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class BreakerOptions(BaseModel):
    """Per-call breaker tuning.  Times are in seconds."""

    max_failures: int = Field(default=5, ge=1)
    reset_timeout: float = Field(default=30.0, ge=0.0)
    call_timeout: float = Field(default=5.0, gt=0.0)
    retries: int = Field(default=2, ge=0)


@dataclass
class BreakerState:
    """Mutable state for one key.  Guarded by ``lock``."""

    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: float | None = None
    trial_in_flight: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    alert_handle: asyncio.TimerHandle | None = field(default=None, repr=False)


@dataclass(frozen=True)
class BreakerEvent:
    """A state transition, delivered to registered listeners."""

    kind: str  # "open" | "half_open" | "close"
    key: str
    consecutive_failures: int = 0


Listener = Callable[[BreakerEvent], None]


def breaker_key(provider: str, tenant_id: str | None = None, scope: str | None = None) -> str:
    """Compose a breaker key such as ``stripe:tenant-42:cred-ab12``."""
    return ":".join(part for part in (provider, tenant_id, scope) if part)


def _consume_outcome(task: asyncio.Future[Any]) -> None:
    # Abandoned operations may still fail later; retrieve the outcome so the
    # loop does not log "exception was never retrieved".
    if not task.cancelled():
        task.exception()


class CircuitBreakerRegistry:
    """Thread-safe registry of per-key circuit breakers.

    Parameters
    ----------
    default_options:
        Options used when :meth:`call` receives none.
    open_alert_window:
        Seconds a key may stay OPEN before ``breaker_still_open`` is logged,
        and the interval between repeated alerts.
    clock:
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        *,
        default_options: BreakerOptions | None = None,
        open_alert_window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._defaults = default_options or BreakerOptions()
        self._alert_window = open_alert_window
        self._clock = clock
        self._states: dict[str, BreakerState] = {}
        # Guards lazy creation only; transitions use the per-key lock.
        self._registry_lock = threading.Lock()
        self._listeners: list[Listener] = []

    # -- introspection -----------------------------------------------------

    def _get_state(self, key: str) -> BreakerState:
        state = self._states.get(key)
        if state is None:
            with self._registry_lock:
                state = self._states.setdefault(key, BreakerState())
        return state

    def state_of(self, key: str) -> CircuitState:
        """Current state for *key*; unknown keys are reported CLOSED."""
        state = self._states.get(key)
        if state is None:
            return CircuitState.CLOSED
        with state.lock:
            return state.state

    def failures_of(self, key: str) -> int:
        state = self._states.get(key)
        if state is None:
            return 0
        with state.lock:
            return state.consecutive_failures

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Return ``{key: {"state", "consecutive_failures", "opened_at"}}``."""
        with self._registry_lock:
            items = list(self._states.items())
        out: dict[str, dict[str, Any]] = {}
        for key, state in items:
            with state.lock:
                out[key] = {
                    "state": state.state.value,
                    "consecutive_failures": state.consecutive_failures,
                    "opened_at": state.opened_at,
                }
        return out

    # -- listeners -----------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: BreakerEvent) -> None:
        record_breaker_transition(event.kind, event.key)
        if event.kind == "open":
            logger.warning("Circuit %s -> OPEN (%d failures)", event.key, event.consecutive_failures)
            self._arm_alert(event.key)
        elif event.kind == "half_open":
            logger.info("Circuit %s -> HALF_OPEN", event.key)
        else:
            logger.info("Circuit %s -> CLOSED (recovered)", event.key)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Breaker listener failed for %s event on %s", event.kind, event.key)

    # -- stuck-open alerting ---------------------------------------------------

    def _arm_alert(self, key: str) -> None:
        state = self._states.get(key)
        if state is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        with state.lock:
            if state.alert_handle is not None:
                state.alert_handle.cancel()
            opened_at = state.opened_at
            state.alert_handle = loop.call_later(self._alert_window, self._check_still_open, key, opened_at)

    def _check_still_open(self, key: str, opened_at: float | None) -> None:
        state = self._states.get(key)
        if state is None:
            return
        with state.lock:
            # A later open episode re-arms its own timer.
            if state.state is not CircuitState.OPEN or state.opened_at != opened_at:
                state.alert_handle = None
                return
            open_for = self._clock() - (opened_at or 0.0)
            state.alert_handle = asyncio.get_running_loop().call_later(
                self._alert_window, self._check_still_open, key, opened_at
            )
        record_breaker_still_open(key)
        logger.error(
            "breaker_still_open key=%s open_for=%.1fs",
            key,
            open_for,
            extra={"context": {"key": key, "open_for_seconds": round(open_for, 3)}},
        )

    # -- state machine ---------------------------------------------------------

    def _admit(self, key: str, state: BreakerState, opts: BreakerOptions) -> bool:
        """Return True when this call is the half-open trial; raise when rejected."""
        events: list[BreakerEvent] = []
        with state.lock:
            if state.state is CircuitState.CLOSED:
                return False
            if state.state is CircuitState.OPEN:
                elapsed = self._clock() - (state.opened_at or 0.0)
                if elapsed < opts.reset_timeout:
                    raise CircuitOpenError(key, retry_after=opts.reset_timeout - elapsed)
                state.state = CircuitState.HALF_OPEN
                state.trial_in_flight = True
                events.append(BreakerEvent("half_open", key, state.consecutive_failures))
            elif state.trial_in_flight:
                raise CircuitOpenError(key)
            else:
                state.trial_in_flight = True
        for event in events:
            self._emit(event)
        return True

    def _record_success(self, key: str, state: BreakerState, is_trial: bool) -> None:
        events: list[BreakerEvent] = []
        with state.lock:
            if is_trial:
                state.state = CircuitState.CLOSED
                state.trial_in_flight = False
                state.opened_at = None
                state.consecutive_failures = 0
                if state.alert_handle is not None:
                    state.alert_handle.cancel()
                    state.alert_handle = None
                events.append(BreakerEvent("close", key))
            elif state.state is CircuitState.CLOSED:
                state.consecutive_failures = 0
        for event in events:
            self._emit(event)

    def _record_failure(self, key: str, state: BreakerState, opts: BreakerOptions, is_trial: bool) -> None:
        events: list[BreakerEvent] = []
        with state.lock:
            state.consecutive_failures += 1
            if is_trial:
                state.state = CircuitState.OPEN
                state.trial_in_flight = False
                state.opened_at = self._clock()
                events.append(BreakerEvent("open", key, state.consecutive_failures))
            elif state.state is CircuitState.CLOSED and state.consecutive_failures >= opts.max_failures:
                state.state = CircuitState.OPEN
                state.opened_at = self._clock()
                events.append(BreakerEvent("open", key, state.consecutive_failures))
        for event in events:
            self._emit(event)

    def _release_trial(self, state: BreakerState) -> None:
        with state.lock:
            state.trial_in_flight = False

    # -- execution ---------------------------------------------------------------

    async def _run_once(self, key: str, operation: Operation[T], timeout: float) -> T:
        cancel_event = asyncio.Event()
        task = asyncio.ensure_future(operation(cancel_event))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            cancel_event.set()
            task.cancel()
            task.add_done_callback(_consume_outcome)
            raise
        if task in done:
            return task.result()

        cancel_event.set()
        task.cancel()
        task.add_done_callback(_consume_outcome)
        raise BreakerTimeoutError(key, timeout)

    async def _execute(self, key: str, operation: Operation[T], opts: BreakerOptions) -> T:
        last_exception: Exception | None = None
        for attempt in range(opts.retries + 1):
            try:
                return await self._run_once(key, operation, opts.call_timeout)
            except Exception as exc:
                last_exception = exc
                if attempt < opts.retries:
                    logger.debug(
                        "Breaker %s attempt %d/%d failed: %s",
                        key,
                        attempt + 1,
                        opts.retries + 1,
                        redact_error_message(exc),
                    )
        assert last_exception is not None  # noqa: S101
        raise last_exception

    async def call(self, key: str, operation: Operation[T], options: BreakerOptions | None = None) -> T:
        """Execute *operation* under the breaker for *key*.

        *operation* receives an :class:`asyncio.Event` that is set when the
        call times out; cooperative operations should stop when it fires.

        Raises
        ------
        CircuitOpenError
            The breaker is open (or a half-open trial is already running).
        BreakerTimeoutError
            The final attempt exceeded ``call_timeout``.
        Exception
            Whatever the final attempt raised.
        """
        opts = options or self._defaults
        state = self._get_state(key)
        is_trial = self._admit(key, state, opts)
        try:
            result = await self._execute(key, operation, opts)
        except Exception:
            self._record_failure(key, state, opts, is_trial)
            raise
        except BaseException:
            # Caller cancelled: not a dependency failure, but free the trial slot.
            if is_trial:
                self._release_trial(state)
            raise
        self._record_success(key, state, is_trial)
        return result

    def reset(self, key: str) -> None:
        """Force *key* back to CLOSED and clear its failure count."""
        state = self._states.get(key)
        if state is None:
            return
        with state.lock:
            state.state = CircuitState.CLOSED
            state.consecutive_failures = 0
            state.opened_at = None
            state.trial_in_flight = False
            if state.alert_handle is not None:
                state.alert_handle.cancel()
                state.alert_handle = None

    def close(self) -> None:
        """Cancel all pending stuck-open alert timers."""
        with self._registry_lock:
            states = list(self._states.values())
        for state in states:
            with state.lock:
                if state.alert_handle is not None:
                    state.alert_handle.cancel()
                    state.alert_handle = None


# Process-wide registry used by :func:`external_call`.
_default_registry: CircuitBreakerRegistry | None = None
_default_lock = threading.Lock()


def get_registry() -> CircuitBreakerRegistry:
    """Return the process-wide registry, creating it from settings on first use."""
    global _default_registry  # noqa: PLW0603
    if _default_registry is None:
        with _default_lock:
            if _default_registry is None:
                from fleet_core.config import load_settings

                settings = load_settings()
                _default_registry = CircuitBreakerRegistry(open_alert_window=settings.breaker_open_alert_seconds)
    return _default_registry


async def external_call(
    provider: str,
    operation: Operation[T],
    *,
    tenant_id: str | None = None,
    scope: str | None = None,
    options: BreakerOptions | None = None,
    registry: CircuitBreakerRegistry | None = None,
) -> T:
    """Call an external *provider* under a breaker keyed by provider and tenant."""
    target = registry or get_registry()
    return await target.call(breaker_key(provider, tenant_id, scope), operation, options)
