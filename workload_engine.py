#!/usr/bin/env python3
"""
🚀 Synthetic Workload & Fault Injection Engine
===============================================
Continuous virtual traffic, bounded stress bursts and timed failure scenarios
against a running application, so logs, metrics and traces always have
something realistic to show.

Features:
- Virtual user population held around a timing-adjusted target
- Rate/concurrency-bounded stress runs with injected error calls
- Single-instance failure scenarios with staged timelines and full recovery
- Bounded cart-checkout simulator posting a batch of realistic orders
- Live rich dashboard, JSON report and JSON-lines event output

Requirements:
    pip install aiohttp rich faker

Usage:
    python workload_engine.py --base-url http://localhost:3001 --users 5 --timing normal
    python workload_engine.py --stress --duration 30 --rps 5 --concurrent 3 --error-rate 20
    python workload_engine.py --users 8 --failure cascading_failure --failure-duration 60 --run-for 90
    python workload_engine.py --no-traffic --checkout-orders 10 --checkout-delay-ms 2000
    python workload_engine.py --config workload.json --output report.json
"""

import argparse
import asyncio
import json
import random
import time
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any, Union

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from api_client import ApiClient
from checkout_simulator import CheckoutSimulator
from data_store import DataStore
from degraded_mode import DegradedMode
from event_sink import EventSink
from failure_scenarios import FailureScenarioEngine, LEAK_CHUNK_BYTES, SCENARIOS, list_scenarios
from outcome_recorder import OutcomeRecorder
from stress_test import StressLoadGenerator
from user_journeys import JourneyRunner
from virtual_traffic import PopulationController
from workload_config import (
    CheckoutSimulatorConfig,
    ConfigStore,
    JourneyPattern,
    StressTestConfig,
    TrafficSettings,
    TrafficTiming,
    WorkloadConfig,
    CHECKOUT_ORDER_TYPES,
    DEFAULT_BASE_URL,
    load_engine_config,
)
from workload_errors import WorkloadError

console = Console()


# =============================================================================
# CONTROL SURFACE
# =============================================================================

class WorkloadEngine:
    """
    Owns exactly one of each component and exposes the operator controls.

    Control methods are synchronous and must be called on the event loop
    thread; they schedule the background loops as asyncio tasks. Reads are
    lock-protected snapshots and may be polled at any time.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        sink: Optional[EventSink] = None,
        traffic_settings: Optional[TrafficSettings] = None,
        workload: Optional[WorkloadConfig] = None,
        time_scale: Optional[float] = None,
        leak_chunk_bytes: int = LEAK_CHUNK_BYTES,
        degraded: Optional[DegradedMode] = None,
        data_store: Optional[DataStore] = None,
        rng: Optional[random.Random] = None,
    ):
        settings = traffic_settings or TrafficSettings()
        if time_scale is not None:
            settings = replace(settings, time_scale=time_scale)
        self.base_url = base_url
        self.settings = settings
        self.rng = rng or random.Random()

        self.sink = sink or EventSink()
        self.config_store = ConfigStore(workload)
        self.recorder = OutcomeRecorder()
        # the host's CRUD endpoints read these two, so it may pass its own
        self.degraded = degraded or DegradedMode(time_scale=settings.time_scale)
        self.data_store = data_store or DataStore()

        self._traffic_client = ApiClient(base_url)
        self.journeys = JourneyRunner(
            client=self._traffic_client,
            recorder=self.recorder,
            sink=self.sink,
            settings=settings,
            catalog=self.data_store.products,
            degraded=self.degraded,
            rng=self.rng,
        )
        self.traffic = PopulationController(self.config_store, self.journeys, self.sink, settings, self.rng)
        self.stress = StressLoadGenerator(
            client_factory=self._stress_client,
            recorder=self.recorder,
            sink=self.sink,
            time_scale=settings.time_scale,
            rng=self.rng,
        )
        self.failures = FailureScenarioEngine(
            self.degraded,
            self.data_store,
            self.sink,
            time_scale=settings.time_scale,
            leak_chunk_bytes=leak_chunk_bytes,
        )
        self.checkout = CheckoutSimulator(
            client=self._traffic_client,
            recorder=self.recorder,
            sink=self.sink,
            catalog=self.data_store.products,
            time_scale=settings.time_scale,
            rng=self.rng,
        )

    def _stress_client(self) -> ApiClient:
        return ApiClient(self.base_url, connection_limit=100)

    # -------------------------------------------------------------------------
    # virtual traffic
    # -------------------------------------------------------------------------

    def set_workload_config(self, config: Union[WorkloadConfig, Dict[str, Any]]) -> Dict[str, Any]:
        """Replace (or partially update, given a dict) the workload config."""
        if isinstance(config, dict):
            config = self.config_store.get().merged(config)
        self.config_store.set(config)
        if config.enabled:
            self.traffic.start()
        else:
            self.traffic.stop()
        return config.to_dict()

    def get_workload_config(self) -> Dict[str, Any]:
        return self.config_store.get().to_dict()

    def get_workload_stats(self) -> Dict[str, Any]:
        return {
            **self.traffic.get_stats(),
            "config": self.get_workload_config(),
            "configVersion": self.config_store.version,
        }

    def get_traffic_details(self) -> Dict[str, Any]:
        return self.traffic.get_detailed_status()

    # -------------------------------------------------------------------------
    # stress
    # -------------------------------------------------------------------------

    def start_stress_test(self, config: Union[StressTestConfig, Dict[str, Any]]) -> Dict[str, Any]:
        if isinstance(config, dict):
            config = StressTestConfig.from_dict(config)
        return self.stress.start(config)

    def stop_stress_test(self) -> Dict[str, Any]:
        return self.stress.stop()

    def get_stress_progress(self) -> Dict[str, Any]:
        return self.stress.get_progress()

    def get_stress_detailed_stats(self) -> Dict[str, Any]:
        return self.stress.get_detailed_stats()

    # -------------------------------------------------------------------------
    # checkout simulator
    # -------------------------------------------------------------------------

    def start_checkout_simulator(
        self, config: Union[CheckoutSimulatorConfig, Dict[str, Any], None] = None
    ) -> Dict[str, Any]:
        if config is None:
            config = CheckoutSimulatorConfig()
        elif isinstance(config, dict):
            config = CheckoutSimulatorConfig.from_dict(config)
        return self.checkout.start(config)

    def stop_checkout_simulator(self) -> Dict[str, Any]:
        return self.checkout.stop()

    def get_checkout_status(self) -> Dict[str, Any]:
        return self.checkout.get_status()

    # -------------------------------------------------------------------------
    # failures
    # -------------------------------------------------------------------------

    def trigger_failure(self, scenario_id: str, duration_seconds: Optional[int] = None) -> Dict[str, Any]:
        return self.failures.trigger(scenario_id, duration_seconds)

    def stop_failure(self) -> Dict[str, Any]:
        return self.failures.stop()

    def get_failure_status(self) -> Dict[str, Any]:
        return self.failures.get_status()

    def list_failure_scenarios(self):
        return list_scenarios()

    # -------------------------------------------------------------------------
    # shared
    # -------------------------------------------------------------------------

    def get_outcome_snapshot(self) -> Dict[str, Any]:
        return self.recorder.snapshot()

    async def shutdown(self):
        """Stop every loop and revert any running failure scenario."""
        for name, step in (
            ("failure", self.failures.shutdown),
            ("stress", self.stress.shutdown),
            ("checkout", self.checkout.shutdown),
            ("traffic", self.traffic.shutdown),
            ("client", self._traffic_client.close),
        ):
            try:
                await step()
            except Exception as e:
                self.sink.emit("engine.internal_fault", level="error", loop=name, error=repr(e))

    def report(self) -> Dict[str, Any]:
        return {
            "generatedAt": datetime.now(timezone.utc).isoformat(),
            "baseUrl": self.base_url,
            "workload": self.get_workload_stats(),
            "stress": self.get_stress_detailed_stats(),
            "failure": self.get_failure_status(),
            "checkout": self.get_checkout_status(),
            "outcomes": self.get_outcome_snapshot(),
            "events": {"emitted": self.sink.emitted_events, "dropped": self.sink.dropped_events},
        }


# =============================================================================
# DASHBOARD
# =============================================================================

def create_dashboard(engine: WorkloadEngine) -> Table:
    """Live overview of every generator."""
    traffic = engine.get_workload_stats()
    stress = engine.get_stress_detailed_stats()
    failure = engine.get_failure_status()
    totals = engine.get_outcome_snapshot()["totals"]

    table = Table(title="🚀 Workload & Fault Injection", expand=True)
    table.add_column("Traffic", style="cyan", width=20)
    table.add_column("", style="green", width=14)
    table.add_column("Stress", style="cyan", width=20)
    table.add_column("", style="green", width=14)

    config = traffic["config"]
    table.add_row(
        "Active Users", f"{traffic['activeUsers']} / {traffic['effectiveTarget']}",
        "Progress", f"{stress['percent']}%" if stress.get("sessionId") else "[dim]idle[/dim]",
    )
    table.add_row(
        "Pattern / Timing", f"{config['journeyPattern']} / {config['trafficTiming']}",
        "Requests", f"{stress['totalRequests']:,}",
    )
    table.add_row(
        "Sessions Today", f"{traffic['totalSessionsToday']:,}",
        "Errors", f"[red]{stress['errorCount']:,}[/red]",
    )
    table.add_row(
        "Orders", f"[green]{traffic['totalOrders']:,}[/green]",
        "Avg Response", f"{stress['avgResponseTimeMs']}ms",
    )
    table.add_row(
        "Bounce Rate", f"{traffic['bounceRate'] * 100:.0f}%",
        "Remaining", f"{stress['secondsRemaining']}s",
    )

    if failure["active"]:
        details = failure["stageDetails"]
        failure_text = (
            f"[bold red]{failure['scenario']}[/bold red] "
            f"{failure['stage']} ({failure['progressPercent']}%, {failure['remainingMs'] // 1000}s left) "
            f"cascade={details['cascadeStage']} leaked={details['leakedArrayCount']} "
            f"queue={details['connectionQueueLength']}"
        )
    else:
        failure_text = "[green]none[/green]"
    table.add_row("Failure", failure_text, "", "")

    checkout = engine.get_checkout_status()
    if checkout["stats"]:
        stats = checkout["stats"]
        state = "[yellow]running[/yellow]" if checkout["isRunning"] else "[dim]done[/dim]"
        table.add_row(
            "Checkout Sim", f"{state} {stats['ordersCreated']}/{checkout['config']['orderCount']}",
            "Sim Orders", f"[green]{stats['ordersSuccessful']}[/green] / [red]{stats['ordersFailed']}[/red]",
        )
    table.add_row(
        "All Outcomes", f"{totals['total']:,}",
        "Outcome Errors", f"[red]{totals['errors']:,}[/red]",
    )
    return table


def print_summary(report: Dict[str, Any]):
    workload = report["workload"]
    stress = report["stress"]
    totals = report["outcomes"]["totals"]
    by_source = report["outcomes"]["bySource"]

    console.print("\n")
    console.print(Panel(
        f"""[bold]Virtual Traffic[/bold]
  Sessions:      {workload['totalSessionsToday']:,}
  Orders:        {workload['totalOrders']:,}
  Bounce Rate:   {workload['bounceRate'] * 100:.0f}%
  Avg Session:   {workload['averageSessionDuration']}s

[bold]Stress Test[/bold]
  Session:       {stress.get('sessionId') or '-'}
  Requests:      {stress['totalRequests']:,} ([red]{stress['errorCount']:,} errors[/red])
  Avg Response:  {stress['avgResponseTimeMs']}ms

[bold]Outcomes[/bold]
  Total:         {totals['total']:,}
  Errors:        {totals['errors']:,}
  Traffic p95:   {by_source['traffic']['latencyMs']['p95']}ms
  Stress p95:    {by_source['stress']['latencyMs']['p95']}ms

[dim]Events emitted: {report['events']['emitted']:,}  dropped: {report['events']['dropped']:,}[/dim]
""",
        title="📊 Session Summary",
        border_style="green" if report["events"]["dropped"] == 0 else "yellow",
    ))


# =============================================================================
# RUNNER
# =============================================================================

async def run_session(
    engine: WorkloadEngine,
    workload: Optional[WorkloadConfig] = None,
    stress: Optional[StressTestConfig] = None,
    failure: Optional[str] = None,
    failure_duration: Optional[int] = None,
    run_for: Optional[float] = None,
    live: bool = True,
    checkout: Optional[CheckoutSimulatorConfig] = None,
) -> Dict[str, Any]:
    """Start what was asked for, show the dashboard, then shut down cleanly."""
    if run_for is None:
        run_for = 60.0
        if stress is not None:
            run_for = max(run_for, stress.duration_seconds + 2)
        if checkout is not None:
            # ~5s of cart and payment steps per order on top of the spacing
            per_order = checkout.delay_between_orders_ms / 1000 + 5
            run_for = max(run_for, checkout.order_count * per_order)
        if failure is not None:
            run_for = max(run_for, (failure_duration or SCENARIOS[failure].default_duration_seconds) + 2)

    if workload is not None:
        engine.set_workload_config(workload)
    if stress is not None:
        engine.start_stress_test(stress)
    if failure is not None:
        engine.trigger_failure(failure, failure_duration)
    if checkout is not None:
        engine.start_checkout_simulator(checkout)

    end_time = time.time() + run_for * engine.settings.time_scale
    try:
        if live:
            with Live(create_dashboard(engine), refresh_per_second=2, console=console) as display:
                while time.time() < end_time:
                    display.update(create_dashboard(engine))
                    await asyncio.sleep(0.5)
        else:
            await asyncio.sleep(max(0.0, end_time - time.time()))
    finally:
        report = engine.report()
        await engine.shutdown()
    return report


def _build_configs(args):
    config = load_engine_config(args.config) if args.config else None
    base_url = args.base_url or (config.base_url if config else DEFAULT_BASE_URL)

    workload = config.workload if config else WorkloadConfig()
    overrides = {}
    if args.users is not None:
        overrides["target_concurrent_users"] = args.users
    if args.pattern:
        overrides["journey_pattern"] = JourneyPattern(args.pattern)
    if args.timing:
        overrides["traffic_timing"] = TrafficTiming(args.timing)
    if overrides or not config:
        overrides["enabled"] = not args.no_traffic
    elif args.no_traffic:
        overrides["enabled"] = False
    workload = replace(workload, **overrides)

    stress = config.stress_test if config else None
    if args.stress:
        stress = StressTestConfig(
            duration_seconds=args.duration,
            requests_per_second=args.rps,
            concurrent_requests=args.concurrent,
            error_rate_percent=args.error_rate,
        )
    checkout = config.checkout_simulator if config else None
    if args.checkout_orders is not None:
        checkout = CheckoutSimulatorConfig(
            order_count=args.checkout_orders,
            delay_between_orders_ms=args.checkout_delay_ms,
            order_type=args.checkout_order_type,
        )
    settings = config.traffic if config else TrafficSettings()
    return base_url, workload, stress, checkout, settings


async def main():
    parser = argparse.ArgumentParser(
        description="🚀 Synthetic Workload & Fault Injection Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--base-url", "-u", help=f"Application base URL (default {DEFAULT_BASE_URL})")
    parser.add_argument(
        "--config", help="JSON config file (workload / stressTest / checkoutSimulator / traffic / baseUrl)"
    )

    traffic = parser.add_argument_group("virtual traffic")
    traffic.add_argument("--users", type=int, help="Target concurrent virtual users")
    traffic.add_argument("--pattern", choices=[p.value for p in JourneyPattern], help="Journey pattern")
    traffic.add_argument("--timing", choices=[t.value for t in TrafficTiming], help="Traffic timing")
    traffic.add_argument("--no-traffic", action="store_true", help="Do not run virtual users")

    stress = parser.add_argument_group("stress test")
    stress.add_argument("--stress", action="store_true", help="Run one stress test")
    stress.add_argument("--duration", type=int, default=30, help="Stress duration in seconds (10-300)")
    stress.add_argument("--rps", type=int, default=5, help="Stress ticks per second (1-20)")
    stress.add_argument("--concurrent", type=int, default=3, help="Calls per tick (1-50)")
    stress.add_argument("--error-rate", type=int, default=20, help="Injected error percentage (0-50)")

    checkout = parser.add_argument_group("checkout simulator")
    checkout.add_argument("--checkout-orders", type=int, help="Post this many simulated orders (1-100)")
    checkout.add_argument("--checkout-delay-ms", type=int, default=2000, help="Delay between orders (100-60000)")
    checkout.add_argument(
        "--checkout-order-type", choices=CHECKOUT_ORDER_TYPES, default="random", help="Order type",
    )

    failure = parser.add_argument_group("failure simulation")
    failure.add_argument("--failure", choices=sorted(SCENARIOS), help="Failure scenario to trigger")
    failure.add_argument("--failure-duration", type=int, help="Failure duration in seconds (10-300)")
    failure.add_argument("--list-scenarios", action="store_true", help="Print the failure catalog and exit")

    parser.add_argument("--run-for", type=float, help="Seconds to keep running (default: long enough for the above)")
    parser.add_argument("--events-file", help="Append structured events to this JSON-lines file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Print events to the console")
    parser.add_argument("--output", "-o", help="Write the final JSON report here")

    args = parser.parse_args()

    if args.list_scenarios:
        table = Table(title="💥 Failure Scenarios")
        for column in ("id", "name", "severity", "default", "impact"):
            table.add_column(column)
        for s in list_scenarios():
            table.add_row(s["id"], s["name"], s["severity"], f"{s['defaultDurationSeconds']}s", s["impact"])
        console.print(table)
        return

    try:
        base_url, workload, stress_config, checkout_config, settings = _build_configs(args)
    except (WorkloadError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/red] {getattr(e, 'message', e)}")
        raise SystemExit(2)

    sink = EventSink(json_path=args.events_file, console_output=args.verbose, out=console)
    engine = WorkloadEngine(base_url, sink=sink, traffic_settings=settings, workload=workload)

    console.print(f"\n[bold]Target:[/bold] {base_url}")
    console.print(f"[bold]Workload:[/bold] {workload.to_dict()}")
    if stress_config:
        console.print(f"[bold]Stress:[/bold] {stress_config.to_dict()}")
    if args.failure:
        console.print(f"[bold]Failure:[/bold] {args.failure}")
    if checkout_config:
        console.print(f"[bold]Checkout:[/bold] {checkout_config.to_dict()}")

    try:
        report = await run_session(
            engine,
            workload=workload,
            stress=stress_config,
            failure=args.failure,
            failure_duration=args.failure_duration,
            run_for=args.run_for,
            checkout=checkout_config,
        )
    except WorkloadError as e:
        await engine.shutdown()
        console.print(f"[red]{e.message}[/red]")
        raise SystemExit(2)

    print_summary(report)
    if args.output:
        Path(args.output).write_text(json.dumps(report, indent=2, default=str))
        console.print(f"[green]Report saved to {args.output}[/green]")


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")


if __name__ == "__main__":
    cli()
