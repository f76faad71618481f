#!/usr/bin/env python3
"""
🎯 Preset Workload Scenarios
=============================
Pre-configured combinations of virtual traffic, stress runs and failure
scenarios, from a quiet afternoon to full CHAOS mode.

Usage:
    python run_presets.py http://localhost:3001 quiet-day
    python run_presets.py http://localhost:3001 payment-outage --output outage.json
    python run_presets.py http://localhost:3001 chaos --i-know-what-im-doing
"""

import asyncio
import json
import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm

from event_sink import EventSink
from workload_config import CheckoutSimulatorConfig, JourneyPattern, StressTestConfig, TrafficTiming, WorkloadConfig
from workload_engine import WorkloadEngine, print_summary, run_session

console = Console()


def _traffic(users: int, pattern: str, timing: str) -> WorkloadConfig:
    return WorkloadConfig(
        enabled=True,
        target_concurrent_users=users,
        journey_pattern=JourneyPattern(pattern),
        traffic_timing=TrafficTiming(timing),
    )


# =============================================================================
# PRESET CONFIGURATIONS
# =============================================================================

PRESETS = {
    # -------------------------------------------------------------------------
    # TRAFFIC PRESETS
    # -------------------------------------------------------------------------
    "quiet-day": {
        "name": "🌱 Quiet Day",
        "description": "A few browsers wandering the menu",
        "workload": _traffic(3, "browsers", "low"),
        "run_for": 120,
    },
    "business-as-usual": {
        "name": "🏪 Business as Usual",
        "description": "Mixed visitors at normal timing",
        "workload": _traffic(5, "mixed", "normal"),
        "run_for": 180,
    },
    "lunch-rush": {
        "name": "🍔 Lunch Rush",
        "description": "Peak-time buyers heading straight to checkout",
        "workload": _traffic(12, "buyers", "peak"),
        "run_for": 180,
    },
    "flash-sale": {
        "name": "⚡ Flash Sale",
        "description": "Clustered bursts of buyers",
        "workload": _traffic(15, "buyers", "burst"),
        "run_for": 120,
    },
    "order-batch": {
        "name": "🧾 Order Batch",
        "description": "20 simulated checkouts, one every 3 seconds, alongside light traffic",
        "workload": _traffic(3, "browsers", "normal"),
        "checkout": CheckoutSimulatorConfig(order_count=20, delay_between_orders_ms=3000),
    },

    # -------------------------------------------------------------------------
    # STRESS PRESETS
    # -------------------------------------------------------------------------
    "warmup": {
        "name": "🏃 Warmup",
        "description": "Short clean stress run, no injected errors",
        "stress": StressTestConfig(duration_seconds=10, requests_per_second=2, concurrent_requests=1, error_rate_percent=0),
    },
    "demo": {
        "name": "📊 Demo Stress",
        "description": "30s at 5 ticks/s with 20% injected errors",
        "stress": StressTestConfig(),
    },
    "error-storm": {
        "name": "🌩️ Error Storm",
        "description": "Half of all stress calls aimed at failing endpoints",
        "stress": StressTestConfig(duration_seconds=60, requests_per_second=10, concurrent_requests=5, error_rate_percent=50),
    },

    # -------------------------------------------------------------------------
    # FAILURE PRESETS
    # -------------------------------------------------------------------------
    "db-meltdown": {
        "name": "🗄️ DB Meltdown",
        "description": "Connection pool exhaustion under normal traffic",
        "workload": _traffic(5, "mixed", "normal"),
        "failure": "connection_pool",
    },
    "payment-outage": {
        "name": "💳 Payment Outage",
        "description": "Payment gateway down while buyers try to check out",
        "workload": _traffic(8, "buyers", "steady"),
        "failure": "payment_gateway",
    },
    "slow-leak": {
        "name": "💧 Slow Leak",
        "description": "Memory leak with researchers browsing",
        "workload": _traffic(4, "researchers", "normal"),
        "failure": "memory_leak",
    },
    "domino": {
        "name": "🁢 Domino",
        "description": "Cascading failure while a stress run is hammering the API",
        "workload": _traffic(5, "mixed", "normal"),
        "stress": StressTestConfig(duration_seconds=40, requests_per_second=5, concurrent_requests=3, error_rate_percent=10),
        "failure": "cascading_failure",
        "failure_duration": 40,
    },
    "bad-data": {
        "name": "🧪 Bad Data",
        "description": "Corrupted products and orders, restored afterwards",
        "workload": _traffic(5, "browsers", "normal"),
        "failure": "data_corruption",
    },

    # -------------------------------------------------------------------------
    # EXTREME PRESETS (USE WITH CAUTION!)
    # -------------------------------------------------------------------------
    "max-load": {
        "name": "☢️ MAX LOAD",
        "description": "20 ticks/s x 50 calls for 5 minutes",
        "stress": StressTestConfig(duration_seconds=300, requests_per_second=20, concurrent_requests=50, error_rate_percent=10),
        "dangerous": True,
    },
    "chaos": {
        "name": "🌪️ CHAOS",
        "description": "Max population, bursty traffic, heavy stress and a cascading failure",
        "workload": _traffic(100, "mixed", "burst"),
        "stress": StressTestConfig(duration_seconds=120, requests_per_second=20, concurrent_requests=30, error_rate_percent=30),
        "failure": "cascading_failure",
        "failure_duration": 120,
        "dangerous": True,
    },
}

CATEGORIES = [
    ("Traffic", ["quiet-day", "business-as-usual", "lunch-rush", "flash-sale", "order-batch"]),
    ("Stress", ["warmup", "demo", "error-storm"]),
    ("Failures", ["db-meltdown", "payment-outage", "slow-leak", "domino", "bad-data"]),
    ("☢️ EXTREME", ["max-load", "chaos"]),
]


def print_presets():
    """Print all available presets."""
    console.print("\n[bold]Available Presets:[/bold]\n")
    for category, preset_names in CATEGORIES:
        console.print(f"[bold cyan]{category}:[/bold cyan]")
        for name in preset_names:
            preset = PRESETS[name]
            danger_flag = "[red]⚠️ DANGEROUS[/red] " if preset.get("dangerous") else ""
            console.print(f"  {name:<18} {preset['name']:<22} {danger_flag}- {preset['description']}")
        console.print("")


async def run_preset(url: str, preset_name: str, dangerous_confirmed: bool = False, output: str = None):
    """Run a preset scenario and return its report, or None if it did not run."""
    if preset_name not in PRESETS:
        console.print(f"[red]Unknown preset: {preset_name}[/red]")
        print_presets()
        return None

    preset = PRESETS[preset_name]

    if preset.get("dangerous") and not dangerous_confirmed:
        console.print(Panel(
            f"[bold red]⚠️  WARNING: {preset['name']} is DANGEROUS![/bold red]\n\n"
            f"{preset['description']}\n\n"
            f"This drives the target at its configured maximums and can cause:\n"
            f"  • Service outages\n"
            f"  • Alert storms\n\n"
            f"[yellow]Only use on systems you own or have permission to test![/yellow]",
            title="⚠️ Dangerous Preset",
            border_style="red"
        ))
        if not Confirm.ask("Do you want to proceed?"):
            console.print("[dim]Cancelled.[/dim]")
            return None

    console.print(Panel(
        f"[bold]{preset['name']}[/bold]\n\n{preset['description']}",
        title=f"Running Preset: {preset_name}",
        border_style="blue"
    ))

    engine = WorkloadEngine(base_url=url, sink=EventSink(console_output=False))
    report = await run_session(
        engine,
        workload=preset.get("workload"),
        stress=preset.get("stress"),
        failure=preset.get("failure"),
        failure_duration=preset.get("failure_duration"),
        run_for=preset.get("run_for"),
        checkout=preset.get("checkout"),
    )
    report["preset"] = preset_name

    print_summary(report)
    if output:
        Path(output).write_text(json.dumps(report, indent=2, default=str))
        console.print(f"[green]Report saved to {output}[/green]")
    return report


def main():
    if len(sys.argv) < 2:
        console.print("[bold]Usage:[/bold] python run_presets.py <URL> [PRESET] [--i-know-what-im-doing] [--output report.json]")
        print_presets()
        return

    if len(sys.argv) == 2:
        if sys.argv[1] in ["--help", "-h", "help"]:
            print_presets()
            return
        console.print("[red]Please provide both URL and preset name[/red]")
        print_presets()
        return

    url = sys.argv[1]
    preset = sys.argv[2]
    dangerous_confirmed = "--i-know-what-im-doing" in sys.argv

    output = None
    for i, arg in enumerate(sys.argv):
        if arg == "--output" and i + 1 < len(sys.argv):
            output = sys.argv[i + 1]

    asyncio.run(run_preset(url, preset, dangerous_confirmed, output))


if __name__ == "__main__":
    main()
