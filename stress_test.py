#!/usr/bin/env python3
"""
🔥 Stress Load Generator
========================
Rate- and concurrency-bounded bursts of synthetic API calls for a bounded
duration, with a configurable share of calls engineered to fail.

Features:
- One tick every 1000ms / requestsPerSecond, `concurrentRequests` calls per tick
- Calls are fired without awaiting them, so slow responses never stretch a tick
- In-flight calls are capped at `concurrentRequests`; skipped slots are counted
- errorRatePercent% of calls come from a pool of 4xx/5xx-producing requests
- Live progress, detailed stats (p50/p95/p99) and a per-run session id

Requirements:
    pip install aiohttp rich

Usage:
    python stress_test.py --base-url http://localhost:3001 --duration 30 --rps 5 --concurrent 3 --error-rate 20
"""

import argparse
import asyncio
import math
import random
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Callable, Set

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from api_client import ApiClient, CallResult, EndpointCall
from event_sink import EventSink
from outcome_recorder import OutcomeKind, OutcomeRecorder, OutcomeSource, SourceStats
from workload_config import StressTestConfig, DEFAULT_BASE_URL
from workload_errors import AlreadyRunning, WorkloadError

console = Console()


# =============================================================================
# ENDPOINT POOLS
# =============================================================================

SUCCESS_POOL = [
    EndpointCall("GET", "/api/health"),
    EndpointCall("GET", "/api/products"),
    EndpointCall("GET", "/api/orders"),
    EndpointCall("GET", "/api/reservations"),
    EndpointCall("GET", "/api/settings"),
]

ERROR_POOL = [
    EndpointCall("GET", "/api/products/999999", name="unknown product"),
    EndpointCall("GET", "/api/orders/invalid-id", name="unknown order"),
    EndpointCall("GET", "/api/reservations/fake-res", name="unknown reservation"),
    EndpointCall("PUT", "/api/products/1", {"invalid": "data"}, name="invalid product update"),
    EndpointCall("POST", "/api/orders", {}, name="empty order"),
    EndpointCall("POST", "/api/reservations", {"incomplete": "data"}, name="incomplete reservation"),
]


def new_session_id() -> str:
    return f"stress-test-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


# =============================================================================
# RUN STATE
# =============================================================================

@dataclass
class StressRunState:
    """Counters for one run. Reset at start, read through snapshots only."""
    session_id: str
    config: StressTestConfig
    time_scale: float = 1.0
    started_at: float = field(default_factory=time.monotonic)
    started_wall: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    completed_naturally: bool = False
    stats: SourceStats = field(default_factory=SourceStats)
    issued: int = 0
    in_flight: int = 0
    max_in_flight: int = 0
    injected_error_calls: int = 0
    dropped_slots: int = 0
    ticks: int = 0

    @property
    def finished(self) -> bool:
        return self.finished_at is not None

    @property
    def elapsed(self) -> float:
        """Elapsed run time in configured (unscaled) seconds."""
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return (end - self.started_at) / self.time_scale

    @property
    def avg_response_time(self) -> int:
        return round(self.stats.avg_latency) if self.stats.total else 0


class StressLoadGenerator:
    """
    At most one run at a time. Control methods run on the event loop thread;
    counters sit behind a lock so they can be polled from anywhere.
    """

    def __init__(
        self,
        client_factory: Callable[[], ApiClient],
        recorder: OutcomeRecorder,
        sink: EventSink,
        time_scale: float = 1.0,
        rng: Optional[random.Random] = None,
    ):
        self.client_factory = client_factory
        self.recorder = recorder
        self.sink = sink
        self.time_scale = time_scale
        self.rng = rng or random.Random()

        self._lock = threading.Lock()
        self._run: Optional[StressRunState] = None
        self._client: Optional[ApiClient] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._call_tasks: Set[asyncio.Task] = set()
        self._finalizers: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        with self._lock:
            return self._run is not None and not self._run.finished

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self, config: StressTestConfig) -> Dict[str, Any]:
        if not isinstance(config, StressTestConfig):
            raise WorkloadError("start() expects a StressTestConfig", code="invalid_config")
        with self._lock:
            if self._run is not None and not self._run.finished:
                raise AlreadyRunning(self._run.session_id)
            run = StressRunState(session_id=new_session_id(), config=config, time_scale=self.time_scale)
            self._run = run

        self._client = self.client_factory()
        self._loop_task = asyncio.create_task(self._tick_loop(run, self._client))
        self.sink.emit(
            "stress_test.start",
            sessionId=run.session_id,
            expectedRequests=config.expected_requests,
            **config.to_dict(),
        )
        return {"sessionId": run.session_id, "config": config.to_dict()}

    def stop(self) -> Dict[str, Any]:
        """Stop ticking. Calls already in flight still resolve and are counted."""
        with self._lock:
            run = self._run
            if run is None or run.finished:
                return self._summary(None)
        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()
        self._finish(run, naturally=False)
        return self._summary(run)

    async def wait_finished(self, drain: bool = True):
        """Wait for the current run to end, and optionally for its calls to resolve."""
        if self._loop_task is not None:
            await asyncio.gather(self._loop_task, return_exceptions=True)
        if drain:
            await self.drain()

    async def drain(self):
        pending = list(self._call_tasks) + list(self._finalizers)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self):
        self.stop()
        for task in list(self._call_tasks):
            task.cancel()
        await self.drain()
        if self._client is not None:
            await self._client.close()

    # =========================================================================
    # TICK LOOP
    # =========================================================================

    async def _tick_loop(self, run: StressRunState, client: ApiClient):
        config = run.config
        interval = config.tick_interval * self.time_scale
        deadline = run.started_at + config.duration_seconds * self.time_scale
        next_tick = run.started_at

        while time.monotonic() < deadline:
            try:
                self._tick(run, client)
            except Exception as e:
                self.sink.emit("engine.internal_fault", level="error", loop="stress", error=repr(e))
            next_tick += interval
            delay = next_tick - time.monotonic()
            if delay > 0:
                await asyncio.sleep(delay)

        self._finish(run, naturally=True)

    def _tick(self, run: StressRunState, client: ApiClient):
        config = run.config
        calls = []
        with self._lock:
            if run.finished:
                return
            run.ticks += 1
            free = max(0, config.concurrent_requests - run.in_flight)
            run.dropped_slots += config.concurrent_requests - free
            for _ in range(free):
                inject = self.rng.random() * 100 < config.error_rate_percent
                calls.append((self.rng.choice(ERROR_POOL if inject else SUCCESS_POOL), inject))
                if inject:
                    run.injected_error_calls += 1
                run.issued += 1
                run.in_flight += 1
            run.max_in_flight = max(run.max_in_flight, run.in_flight)

        for call, injected in calls:
            task = asyncio.create_task(self._fire(run, client, call, injected))
            self._call_tasks.add(task)
            task.add_done_callback(self._call_tasks.discard)

    async def _fire(self, run: StressRunState, client: ApiClient, call: EndpointCall, injected: bool):
        headers = {"X-Stress-Test": "true", "X-Stress-Session": run.session_id}
        start = time.perf_counter()
        try:
            result = await client.call(call, extra_headers=headers)
        except Exception as e:
            # a broken client is a transient failure, not a stop condition
            result = CallResult(
                call=call,
                status_code=0,
                latency_ms=(time.perf_counter() - start) * 1000,
                success=False,
                error=repr(e)[:80],
            )
        finally:
            with self._lock:
                run.in_flight -= 1
        self._record(run, result, injected)

    def _record(self, run: StressRunState, result: CallResult, injected: bool):
        kind = OutcomeKind.SUCCESS if result.success else OutcomeKind.ERROR
        with self._lock:
            run.stats.add(kind, result.latency_ms, result.status_code)
        if result.success:
            self.recorder.record_success(OutcomeSource.STRESS, result.latency_ms, result.status_code, result.call.path)
        else:
            self.recorder.record_error(OutcomeSource.STRESS, result.latency_ms, result.status_code, result.call.path)

        self.sink.emit(
            "stress_test.request",
            level="debug",
            sessionId=run.session_id,
            injected=injected,
            **result.to_dict(),
        )
        if not result.success:
            self.sink.emit(
                "stress_test.api_error",
                level="warning",
                sessionId=run.session_id,
                injected=injected,
                call=result.call.label,
                method=result.call.method,
                endpoint=result.call.path,
                statusCode=result.status_code,
                error=result.error,
            )

    def _finish(self, run: StressRunState, naturally: bool):
        with self._lock:
            if run.finished:
                return
            run.finished_at = time.monotonic()
            run.completed_naturally = naturally
        client = self._client
        finalizer = asyncio.get_running_loop().create_task(self._close_after_drain(client))
        self._finalizers.add(finalizer)
        finalizer.add_done_callback(self._finalizers.discard)
        self.sink.emit("stress_test.complete", stoppedManually=not naturally, **self._summary(run))

    async def _close_after_drain(self, client: Optional[ApiClient]):
        pending = list(self._call_tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if client is not None:
            await client.close()

    # =========================================================================
    # READS
    # =========================================================================

    def _summary(self, run: Optional[StressRunState]) -> Dict[str, Any]:
        if run is None:
            return {
                "sessionId": None,
                "totalRequests": 0,
                "successCount": 0,
                "errorCount": 0,
                "finalAvgResponseTimeMs": 0,
            }
        with self._lock:
            return {
                "sessionId": run.session_id,
                "totalRequests": run.stats.total,
                "successCount": run.stats.successes,
                "errorCount": run.stats.errors,
                "finalAvgResponseTimeMs": run.avg_response_time,
                "durationSeconds": round(run.elapsed, 1),
            }

    def get_progress(self) -> Dict[str, Any]:
        with self._lock:
            run = self._run
            if run is None:
                return {
                    "running": False,
                    "percent": 0,
                    "totalRequests": 0,
                    "successCount": 0,
                    "errorCount": 0,
                    "avgResponseTimeMs": 0,
                    "secondsRemaining": 0,
                }
            duration = run.config.duration_seconds
            elapsed = run.elapsed
            if run.completed_naturally:
                percent, remaining = 100, 0
            else:
                percent = min(100, round(elapsed / duration * 100))
                remaining = 0 if run.finished else max(0, math.ceil(duration - elapsed))
            return {
                "running": not run.finished,
                "sessionId": run.session_id,
                "percent": percent,
                "totalRequests": run.stats.total,
                "successCount": run.stats.successes,
                "errorCount": run.stats.errors,
                "avgResponseTimeMs": run.avg_response_time,
                "secondsRemaining": remaining,
            }

    def get_detailed_stats(self) -> Dict[str, Any]:
        progress = self.get_progress()
        with self._lock:
            run = self._run
            if run is None:
                return {**progress, "config": None}
            elapsed = run.elapsed
            stats = run.stats
            return {
                **progress,
                "config": run.config.to_dict(),
                "elapsedSeconds": round(elapsed, 1),
                "requestsPerSecond": round(stats.total / elapsed, 2) if elapsed > 0 else 0,
                "successRate": round(stats.success_rate, 1),
                "minResponseTime": round(stats.min_latency),
                "maxResponseTime": round(stats.max_latency),
                "p50": round(stats.sampler.percentile(50)),
                "p95": round(stats.sampler.percentile(95)),
                "p99": round(stats.sampler.percentile(99)),
                "ticks": run.ticks,
                "issuedRequests": run.issued,
                "inFlight": run.in_flight,
                "maxInFlight": run.max_in_flight,
                "injectedErrorCalls": run.injected_error_calls,
                "droppedSlots": run.dropped_slots,
                "statusCodes": dict(sorted(stats.status_codes.items())),
            }


# =============================================================================
# DISPLAY
# =============================================================================

def create_stress_table(stats: Dict[str, Any]) -> Table:
    """Live two-column metrics table for a stress run."""
    table = Table(title="🔥 Stress Test", expand=True)
    table.add_column("Metric", style="cyan", width=20)
    table.add_column("Value", style="green", width=14)
    table.add_column("Metric", style="cyan", width=20)
    table.add_column("Value", style="green", width=14)

    table.add_row(
        "Progress", f"{stats.get('percent', 0)}%",
        "Remaining", f"{stats.get('secondsRemaining', 0)}s",
    )
    table.add_row(
        "Total Requests", f"{stats.get('totalRequests', 0):,}",
        "Success Rate", f"{stats.get('successRate', 0):.1f}%",
    )
    table.add_row(
        "Successful", f"[green]{stats.get('successCount', 0):,}[/green]",
        "Errors", f"[red]{stats.get('errorCount', 0):,}[/red]",
    )
    table.add_row(
        "Avg Response", f"{stats.get('avgResponseTimeMs', 0)}ms",
        "P95 / P99", f"{stats.get('p95', 0)} / {stats.get('p99', 0)}ms",
    )
    table.add_row(
        "Injected Errors", f"[yellow]{stats.get('injectedErrorCalls', 0):,}[/yellow]",
        "Dropped Slots", f"{stats.get('droppedSlots', 0):,}",
    )
    return table


def print_stress_summary(stats: Dict[str, Any]):
    console.print(Panel(
        f"""[bold]Session:[/bold] {stats.get('sessionId')}

[cyan]Total Requests:[/cyan]   {stats.get('totalRequests', 0):,}
[green]Successful:[/green]       {stats.get('successCount', 0):,} ({stats.get('successRate', 0):.1f}%)
[red]Errors:[/red]           {stats.get('errorCount', 0):,}
[yellow]Injected Errors:[/yellow]  {stats.get('injectedErrorCalls', 0):,}
[dim]Dropped Slots:[/dim]    {stats.get('droppedSlots', 0):,}

[bold]Response Time (ms):[/bold]
  Avg: {stats.get('avgResponseTimeMs', 0)}  Min: {stats.get('minResponseTime', 0)}  Max: {stats.get('maxResponseTime', 0)}
  P50: {stats.get('p50', 0)}  P95: {stats.get('p95', 0)}  P99: {stats.get('p99', 0)}
""",
        title="📊 Stress Test Results",
        border_style="green" if stats.get("errorCount", 0) <= stats.get("injectedErrorCalls", 0) else "yellow",
    ))


async def run_stress(base_url: str, config: StressTestConfig, sink: Optional[EventSink] = None) -> Dict[str, Any]:
    """Run one stress test to completion with a live table."""
    generator = StressLoadGenerator(
        client_factory=lambda: ApiClient(base_url, connection_limit=config.concurrent_requests * 2),
        recorder=OutcomeRecorder(),
        sink=sink or EventSink(console_output=False),
    )
    generator.start(config)
    try:
        with Live(create_stress_table(generator.get_detailed_stats()), refresh_per_second=4, console=console) as live:
            while generator.running:
                live.update(create_stress_table(generator.get_detailed_stats()))
                await asyncio.sleep(0.25)
            await generator.wait_finished()
            live.update(create_stress_table(generator.get_detailed_stats()))
    finally:
        await generator.shutdown()
    return generator.get_detailed_stats()


async def main():
    parser = argparse.ArgumentParser(description="🔥 Stress Load Generator")
    parser.add_argument("--base-url", "-u", default=DEFAULT_BASE_URL, help="Application base URL")
    parser.add_argument("--duration", "-d", type=int, default=30, help="Duration in seconds (10-300)")
    parser.add_argument("--rps", type=int, default=5, help="Ticks per second (1-20)")
    parser.add_argument("--concurrent", "-c", type=int, default=3, help="Calls per tick (1-50)")
    parser.add_argument("--error-rate", "-e", type=int, default=20, help="Injected error percentage (0-50)")
    args = parser.parse_args()

    try:
        config = StressTestConfig(
            duration_seconds=args.duration,
            requests_per_second=args.rps,
            concurrent_requests=args.concurrent,
            error_rate_percent=args.error_rate,
        )
    except WorkloadError as e:
        console.print(f"[red]{e.message}[/red]")
        raise SystemExit(2)

    console.print(f"\n[bold]Target:[/bold] {args.base_url}")
    console.print(f"[bold]Expected requests:[/bold] ~{config.expected_requests:,}\n")
    stats = await run_stress(args.base_url, config)
    print_stress_summary(stats)


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")


if __name__ == "__main__":
    cli()
