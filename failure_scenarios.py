#!/usr/bin/env python3
"""
💥 Failure Scenario Engine
==========================
Timed, single-instance degradation of the running application.

    Idle → Armed → Running(stage 0..N) → Recovering → Idle

Each scenario is a declarative timeline of (offset, stage) pairs, where the
offset is a fraction of the run's duration, plus an optional periodic tick
(queue growth, gateway retries, leaked allocations). Every injected effect
is reverted synchronously on expiry or stop().

Scenarios:
- connection_pool    orders fail after a 5s wait, waiter queue keeps growing
- payment_gateway    every payment is declined
- memory_leak        retained allocations grow each second, latency follows
- cascading_failure  menu → orders → reservations → everything → system down
- data_corruption    product prices/names and every third order are garbled
"""

import asyncio
import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any, Callable, Tuple

from data_store import DataStore
from degraded_mode import DegradedMode, SERVICE_DEGRADED, SERVICE_DOWN
from event_sink import EventSink
from workload_errors import AlreadyActive, InvalidDuration, InvalidScenario

DURATION_RANGE = (10, 300)

# bytes retained per memory-leak tick
LEAK_CHUNK_BYTES = 1024 * 1024
CONNECTION_QUEUE_ALERT = 10


class FailureLifecycle(Enum):
    IDLE = "idle"
    ARMED = "armed"
    RUNNING = "running"
    RECOVERING = "recovering"


@dataclass
class FailureRunState:
    """The one live scenario run. Only the engine mutates it."""
    scenario_id: str
    duration_seconds: int
    time_scale: float = 1.0
    started_at: float = field(default_factory=time.monotonic)
    started_wall: float = field(default_factory=time.time)
    stage: int = 0
    stage_name: str = "starting"
    stage_entered_at: float = field(default_factory=time.monotonic)
    cascade_stage: int = 0
    leaked_chunks: List[bytearray] = field(default_factory=list)
    connection_queue: int = 0
    gateway_retries: int = 0
    ticks: int = 0
    data_snapshot: Optional[Dict[str, Any]] = None
    corrupted: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def elapsed(self) -> float:
        """Seconds since start in configured (unscaled) time."""
        return (time.monotonic() - self.started_at) / self.time_scale

    @property
    def leaked_array_count(self) -> int:
        return len(self.leaked_chunks)

    @property
    def expected_ticks(self) -> int:
        return max(1, self.duration_seconds)


# =============================================================================
# STAGE EFFECTS
# =============================================================================

@dataclass(frozen=True)
class Stage:
    name: str
    apply: Callable[["FailureScenarioEngine", FailureRunState], None]


def _exhaust_pool(engine, run):
    engine.degraded.set_flag("dbPoolExhausted")


def _grow_connection_queue(engine, run):
    run.connection_queue += 1
    engine.degraded.set_connection_queue(run.connection_queue)
    level = "critical" if run.connection_queue > CONNECTION_QUEUE_ALERT else "warning"
    engine.sink.emit(
        "failure.metric",
        level=level,
        scenario=run.scenario_id,
        metric="db_connection_queue",
        value=run.connection_queue,
        maxConnections=3,
        overflow=run.connection_queue > CONNECTION_QUEUE_ALERT,
    )


def _gateway_down(engine, run):
    engine.degraded.set_flag("paymentGatewayDown")


def _gateway_retry(engine, run):
    run.gateway_retries += 1
    engine.sink.emit(
        "failure.metric",
        level="error",
        scenario=run.scenario_id,
        metric="payment_gateway_retry",
        value=run.gateway_retries,
        error="ETIMEDOUT",
    )


def _start_leak(engine, run):
    engine.degraded.set_flag("memoryLeaking")


def _leak(engine, run):
    run.leaked_chunks.append(bytearray(engine.leak_chunk_bytes))
    count = run.leaked_array_count
    usage = count / run.expected_ticks
    if usage > 0.9:
        engine.degraded.set_memory_pressure(3000)
    elif usage > 0.8:
        engine.degraded.set_memory_pressure(1000)
    engine.sink.emit(
        "failure.metric",
        level="critical" if usage > 0.9 else "warning",
        scenario=run.scenario_id,
        metric="retained_allocations",
        value=count,
        retainedBytes=count * engine.leak_chunk_bytes,
        usagePercent=round(usage * 100),
    )
    if count % 10 == 0:
        engine.sink.emit("failure.metric", level="warning", scenario=run.scenario_id, metric="gc_pressure", value=count)


def _cascade(stage_number: int, service_states: Dict[str, str], system_failure: bool = False):
    def apply(engine, run):
        engine.degraded.set_flag("cascadingFailure")
        for service, state in service_states.items():
            engine.degraded.set_service_state(service, state)
        if system_failure:
            engine.degraded.set_flag("systemFailure")
        run.cascade_stage = stage_number
    return apply


def _corrupt_data(engine, run):
    store = engine.data_store
    products = store.products()
    corrupted_products = []
    garbles = [
        {"price": -99.99},
        {"price": "CORRUPTED"},
        {"price": None},
        {"name": None, "description": f"ERROR: Buffer overflow at 0x{random.getrandbits(32):08x}"},
    ]
    for index, fields in enumerate(garbles[:len(products)]):
        store.update_product(index, **fields)
        corrupted_products.append(products[index]["id"])

    corrupted_orders = []
    for index, order in enumerate(store.orders()):
        if index % 3 == 0:
            store.update_order(index, total=float("nan"), items=None)
            corrupted_orders.append(order["id"])

    run.corrupted = {"products": corrupted_products, "orders": corrupted_orders}
    engine.degraded.set_flag("dataCorrupted")
    engine.sink.emit(
        "failure.metric",
        level="error",
        scenario=run.scenario_id,
        metric="data_integrity_violation",
        affectedProducts=corrupted_products,
        affectedOrders=len(corrupted_orders),
    )


# =============================================================================
# CATALOG
# =============================================================================

@dataclass(frozen=True)
class FailureScenario:
    """Static catalog entry."""
    id: str
    name: str
    description: str
    severity: str
    default_duration_seconds: int
    impact: str
    timeline: Tuple[Tuple[float, Stage], ...]
    tick_seconds: float = 1.0
    on_tick: Optional[Callable[["FailureScenarioEngine", FailureRunState], None]] = None
    touches_data: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "severity": self.severity,
            "defaultDurationSeconds": self.default_duration_seconds,
            "impact": self.impact,
            "stages": [stage.name for _, stage in self.timeline],
        }


SCENARIOS: Dict[str, FailureScenario] = {
    s.id: s for s in [
        FailureScenario(
            id="connection_pool",
            name="Database Connection Pool Exhaustion",
            description="All database connections are held; new queries queue up behind them.",
            severity="high",
            default_duration_seconds=60,
            impact="Order endpoints wait 5s and then fail with 503; the waiter queue keeps growing.",
            timeline=((0.0, Stage("pool_exhausted", _exhaust_pool)),),
            tick_seconds=2.0,
            on_tick=_grow_connection_queue,
        ),
        FailureScenario(
            id="payment_gateway",
            name="Payment Gateway Outage",
            description="The upstream payment processor stops answering.",
            severity="high",
            default_duration_seconds=45,
            impact="Every payment attempt is declined; checkouts end in payment failure.",
            timeline=((0.0, Stage("gateway_down", _gateway_down)),),
            tick_seconds=5.0,
            on_tick=_gateway_retry,
        ),
        FailureScenario(
            id="memory_leak",
            name="Memory Leak",
            description="The server retains a new allocation every second and never frees it.",
            severity="high",
            default_duration_seconds=120,
            impact="Latency on every endpoint rises by 1s, then 3s, as retained memory climbs.",
            timeline=((0.0, Stage("leaking", _start_leak)),),
            tick_seconds=1.0,
            on_tick=_leak,
        ),
        FailureScenario(
            id="cascading_failure",
            name="Cascading Service Failure",
            description="One degraded dependency takes the rest of the services down with it.",
            severity="critical",
            default_duration_seconds=30,
            impact="Menu slows then fails, followed by orders, reservations and finally the whole system.",
            timeline=(
                (1 / 6, Stage("menu_degraded", _cascade(1, {"products": SERVICE_DEGRADED}))),
                (2 / 6, Stage("orders_degraded", _cascade(2, {"products": SERVICE_DOWN, "orders": SERVICE_DEGRADED}))),
                (3 / 6, Stage("reservations_degraded", _cascade(3, {"orders": SERVICE_DOWN, "reservations": SERVICE_DEGRADED}))),
                (4 / 6, Stage("all_degraded", _cascade(4, {"reservations": SERVICE_DOWN}))),
                (5 / 6, Stage("peak", _cascade(5, {}, system_failure=True))),
            ),
        ),
        FailureScenario(
            id="data_corruption",
            name="Data Corruption",
            description="Product and order records are overwritten with invalid values.",
            severity="high",
            default_duration_seconds=90,
            impact="Menu shows negative, missing and non-numeric prices; a third of orders lose totals and items.",
            timeline=((0.0, Stage("corrupted", _corrupt_data)),),
            touches_data=True,
        ),
    ]
}


def list_scenarios() -> List[Dict[str, Any]]:
    return [scenario.to_dict() for scenario in SCENARIOS.values()]


# =============================================================================
# ENGINE
# =============================================================================

class FailureScenarioEngine:
    """
    Owns the single FailureRunState and the degraded-mode flags.

    `_lock` is the exclusivity lock: trigger, stop and recovery all take it,
    so two triggers can never both pass the Idle check.
    """

    def __init__(
        self,
        degraded: DegradedMode,
        data_store: DataStore,
        sink: EventSink,
        time_scale: float = 1.0,
        leak_chunk_bytes: int = LEAK_CHUNK_BYTES,
    ):
        self.degraded = degraded
        self.data_store = data_store
        self.sink = sink
        self.time_scale = time_scale
        self.leak_chunk_bytes = leak_chunk_bytes

        self._lock = threading.RLock()
        self._lifecycle = FailureLifecycle.IDLE
        self._run: Optional[FailureRunState] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def lifecycle(self) -> FailureLifecycle:
        with self._lock:
            return self._lifecycle

    @property
    def active(self) -> bool:
        return self.lifecycle is not FailureLifecycle.IDLE

    # -------------------------------------------------------------------------
    # trigger / stop
    # -------------------------------------------------------------------------

    def trigger(self, scenario_id: str, duration_seconds: Optional[int] = None) -> Dict[str, Any]:
        scenario = SCENARIOS.get(scenario_id)
        if scenario is None:
            raise InvalidScenario(scenario_id, list(SCENARIOS))
        if duration_seconds is None:
            duration_seconds = scenario.default_duration_seconds
        low, high = DURATION_RANGE
        if (
            isinstance(duration_seconds, bool)
            or not isinstance(duration_seconds, int)
            or not low <= duration_seconds <= high
        ):
            raise InvalidDuration(duration_seconds, low, high)

        with self._lock:
            if self._lifecycle is not FailureLifecycle.IDLE:
                raise AlreadyActive(self._run.scenario_id if self._run else None)
            self._lifecycle = FailureLifecycle.ARMED
            run = FailureRunState(scenario_id=scenario_id, duration_seconds=duration_seconds, time_scale=self.time_scale)
            if scenario.touches_data:
                run.data_snapshot = self.data_store.snapshot()
            self._run = run
            self.degraded.activate(scenario_id)
            try:
                self._advance_stages(scenario, run, 0.0)
            except Exception:
                self._revert(run)
                self._run = None
                self._lifecycle = FailureLifecycle.IDLE
                raise
            self._lifecycle = FailureLifecycle.RUNNING
            self._task = asyncio.create_task(self._run_timeline(scenario, run))

        self.sink.emit(
            "failure.started",
            level="warning",
            scenario=scenario_id,
            name=scenario.name,
            severity=scenario.severity,
            durationSeconds=duration_seconds,
        )
        return {
            "scenario": scenario_id,
            "durationSeconds": duration_seconds,
            "startedAt": run.started_wall,
            "expectedEndTime": run.started_wall + duration_seconds * self.time_scale,
        }

    def stop(self) -> Dict[str, Any]:
        """Revert everything now. Safe no-op when idle."""
        with self._lock:
            run = self._run
            if run is None or self._lifecycle is not FailureLifecycle.RUNNING:
                return {"scenario": None, "elapsedMs": 0}
            task = self._task
            result = self._recover(run, manual=True)
        if task is not None and not task.done():
            task.cancel()
        return result

    async def shutdown(self):
        self.stop()
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    # -------------------------------------------------------------------------
    # timeline
    # -------------------------------------------------------------------------

    async def _run_timeline(self, scenario: FailureScenario, run: FailureRunState):
        next_tick = scenario.tick_seconds if scenario.on_tick is not None else float("inf")
        while True:
            elapsed = run.elapsed
            if elapsed >= run.duration_seconds:
                break
            with self._lock:
                if self._run is not run:
                    return
                try:
                    self._advance_stages(scenario, run, elapsed)
                except Exception as e:
                    # the broken stage is skipped; later stages still apply on time
                    run.stage += 1
                    self._tick_fault(run, e)
                if scenario.on_tick is not None and elapsed >= next_tick:
                    run.ticks += 1
                    next_tick += scenario.tick_seconds
                    try:
                        scenario.on_tick(self, run)
                    except Exception as e:
                        self._tick_fault(run, e)

            wake_at = min(next_tick, run.duration_seconds, self._next_stage_offset(scenario, run))
            await asyncio.sleep(max(0.0, wake_at - run.elapsed) * self.time_scale)

        with self._lock:
            if self._run is run:
                self._recover(run, manual=False)

    def _tick_fault(self, run: FailureRunState, error: Exception):
        self.sink.emit(
            "engine.internal_fault", level="error", loop="failure", scenario=run.scenario_id, error=repr(error),
        )

    def _next_stage_offset(self, scenario: FailureScenario, run: FailureRunState) -> float:
        if run.stage < len(scenario.timeline):
            return scenario.timeline[run.stage][0] * run.duration_seconds
        return float(run.duration_seconds)

    def _advance_stages(self, scenario: FailureScenario, run: FailureRunState, elapsed: float):
        while run.stage < len(scenario.timeline):
            offset, stage = scenario.timeline[run.stage]
            if elapsed < offset * run.duration_seconds:
                return
            stage.apply(self, run)
            run.stage += 1
            run.stage_name = stage.name
            run.stage_entered_at = time.monotonic()
            self.sink.emit(
                "failure.stage",
                level="critical" if scenario.severity == "critical" else "warning",
                scenario=run.scenario_id,
                stage=stage.name,
                stageIndex=run.stage,
                elapsedSeconds=round(elapsed, 1),
            )

    # -------------------------------------------------------------------------
    # recovery
    # -------------------------------------------------------------------------

    def _revert(self, run: FailureRunState):
        self.degraded.clear()
        if run.data_snapshot is not None:
            self.data_store.restore(run.data_snapshot)
        run.leaked_chunks.clear()
        run.connection_queue = 0

    def _recover(self, run: FailureRunState, manual: bool) -> Dict[str, Any]:
        """Running → Recovering → Idle. Caller holds the lock."""
        self._lifecycle = FailureLifecycle.RECOVERING
        elapsed_ms = round(run.elapsed * 1000)
        freed = run.leaked_array_count
        try:
            self._revert(run)
        finally:
            self._run = None
            self._lifecycle = FailureLifecycle.IDLE

        self.sink.emit(
            "failure.stopped",
            scenario=run.scenario_id,
            elapsedMs=elapsed_ms,
            manualStop=manual,
            allocationsFreed=freed,
        )
        return {"scenario": run.scenario_id, "elapsedMs": elapsed_ms}

    # -------------------------------------------------------------------------
    # status
    # -------------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            run = self._run
            if run is None:
                return {
                    "active": False,
                    "state": self._lifecycle.value,
                    "scenario": None,
                    "progressPercent": 0,
                    "remainingMs": 0,
                    "elapsedMs": 0,
                    "stageDetails": {"cascadeStage": 0, "leakedArrayCount": 0, "connectionQueueLength": 0},
                }
            scenario = SCENARIOS[run.scenario_id]
            elapsed = run.elapsed
            duration = run.duration_seconds
            return {
                "active": True,
                "state": self._lifecycle.value,
                "scenario": run.scenario_id,
                "name": scenario.name,
                "severity": scenario.severity,
                "durationSeconds": duration,
                "elapsedMs": round(elapsed * 1000),
                "remainingMs": max(0, round((duration - elapsed) * 1000)),
                "progressPercent": min(100, round(elapsed / duration * 100)),
                "stage": run.stage_name,
                "stageIndex": run.stage,
                "stageDetails": {
                    "cascadeStage": run.cascade_stage,
                    "leakedArrayCount": run.leaked_array_count,
                    "connectionQueueLength": run.connection_queue,
                    "gatewayRetries": run.gateway_retries,
                    "corrupted": dict(run.corrupted),
                    "stageAgeSeconds": round((time.monotonic() - run.stage_entered_at) / self.time_scale, 1),
                },
                "degradedMode": self.degraded.snapshot(),
            }
