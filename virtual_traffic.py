#!/usr/bin/env python3
"""
🚦 Virtual Traffic Population Controller
=========================================
Keeps a timing-adjusted number of virtual user journeys running, spawning new
ones at randomized intervals and retiring finished ones, until stopped.

- Reads the WorkloadConfig from the shared ConfigStore on every tick, so
  config changes apply on the next tick and never touch running journeys
- Initial staggered ramp on start, immediate replacement under `steady`
- Stopping halts spawning only; running journeys drain naturally
"""

import asyncio
import random
import threading
import time
from collections import deque
from datetime import date
from typing import Optional, Dict, Any, Set

from event_sink import EventSink
from traffic_patterns import TargetWindow, resolve_target
from user_journeys import JourneyRunner, JourneyState, VirtualUser, new_virtual_user, pick_archetype
from workload_config import ConfigStore, TrafficSettings, TrafficTiming, WorkloadConfig

# burst ticks spawn at most this many users at once
CLUSTER_SIZE = 3


class PopulationController:
    """Owns every VirtualUser it spawns until that user's journey ends."""

    def __init__(
        self,
        store: ConfigStore,
        runner: JourneyRunner,
        sink: EventSink,
        settings: Optional[TrafficSettings] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.runner = runner
        self.sink = sink
        self.settings = settings or TrafficSettings()
        self.rng = rng or random.Random()

        self._lock = threading.Lock()
        self._active: Dict[str, VirtualUser] = {}
        self._journey_tasks: Set[asyncio.Task] = set()
        self._control_tasks: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

        self._session_counter = 0
        self._window: Optional[TargetWindow] = None
        self._next_spawn_at = 0.0
        self._reset_daily_stats()

    def _reset_daily_stats(self):
        self._day = date.today()
        self._sessions_today = 0
        self._orders_today = 0
        self._finished_today = 0
        self._bounced_today = 0
        self._payment_failures_today = 0
        self._durations: deque = deque(maxlen=self.settings.recent_durations_kept)
        self._recently_completed: deque = deque(maxlen=5)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def start(self, config: Optional[WorkloadConfig] = None):
        """Start the loop, or just apply `config` if it is already running."""
        if config is not None:
            self.store.set(config)
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._next_spawn_at = 0.0
        self._loop_task = asyncio.create_task(self._run())
        self._spawn_soon(self._initial_ramp())

    def update_config(self, config: WorkloadConfig):
        self.store.set(config)

    def stop(self):
        """Stop spawning. Running journeys finish on their own."""
        self._stop_event.set()
        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()
        self._loop_task = None
        for task in list(self._control_tasks):
            task.cancel()

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for running journeys to finish. True if all finished in time."""
        pending = list(self._journey_tasks)
        if not pending:
            return True
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        return not not_done

    async def shutdown(self):
        """Stop and abort whatever journeys are still running."""
        self.stop()
        tasks = list(self._journey_tasks) + list(self._control_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _spawn_soon(self, coro):
        task = asyncio.create_task(coro)
        self._control_tasks.add(task)
        task.add_done_callback(self._control_tasks.discard)
        return task

    # =========================================================================
    # CONTROL LOOP
    # =========================================================================

    async def _run(self):
        while not self._stop_event.is_set():
            try:
                self._tick()
            except Exception as e:
                self.sink.emit("engine.internal_fault", level="error", loop="traffic", error=repr(e))
            await asyncio.sleep(self.settings.tick_seconds * self.settings.time_scale)

    def _tick(self):
        if date.today() != self._day:
            with self._lock:
                self._reset_daily_stats()

        config = self.store.get()
        if not config.enabled or config.target_concurrent_users == 0:
            self._window = None
            return

        window = resolve_target(config.target_concurrent_users, config.traffic_timing, self.rng)
        self._window = window
        active = self.active_count
        if active >= window.effective_target:
            return

        now = time.monotonic()
        if window.clustered:
            for _ in range(min(CLUSTER_SIZE, window.effective_target - active)):
                self._spawn(config, window)
        elif now >= self._next_spawn_at:
            self._spawn(config, window)
        else:
            return
        delay = window.spawn_delay(self.settings.spawn_interval_range, self.rng)
        self._next_spawn_at = now + delay * self.settings.time_scale

    async def _initial_ramp(self):
        config = self.store.get()
        if not config.enabled or config.target_concurrent_users == 0:
            return
        window = resolve_target(config.target_concurrent_users, config.traffic_timing, self.rng)
        needed = window.effective_target - self.active_count
        if needed <= 0:
            return
        self.sink.emit("traffic.ramp", target=window.effective_target, spawning=needed)
        for i in range(needed):
            if i:
                await asyncio.sleep(self.settings.ramp_stagger_seconds * self.settings.time_scale)
            if self._stop_event.is_set():
                return
            # re-read so a lowered or zeroed target stops the ramp
            current = self.store.get()
            if not current.enabled or current.target_concurrent_users == 0:
                return
            window = resolve_target(current.target_concurrent_users, current.traffic_timing, self.rng)
            if self._spawn(current, window) is None:
                return

    async def _replace_later(self):
        await asyncio.sleep(self.settings.replacement_delay_seconds * self.settings.time_scale)
        if self._stop_event.is_set() or not self.running:
            return
        config = self.store.get()
        if config.enabled and config.traffic_timing is TrafficTiming.STEADY:
            window = resolve_target(config.target_concurrent_users, config.traffic_timing, self.rng)
            self._spawn(config, window)

    # =========================================================================
    # JOURNEYS
    # =========================================================================

    def _spawn(self, config: WorkloadConfig, window: TargetWindow) -> Optional[VirtualUser]:
        with self._lock:
            if len(self._active) >= min(window.effective_target, window.ceiling):
                return None
            self._session_counter += 1
            user_id = f"traffic-user-{self._session_counter}-{int(time.time() * 1000)}"
            archetype = pick_archetype(config.journey_pattern, self.rng)
            user = new_virtual_user(user_id, archetype, self.rng)
            self._active[user_id] = user
            self._sessions_today += 1
            active = len(self._active)

        task = asyncio.create_task(self._run_journey(user))
        self._journey_tasks.add(task)
        task.add_done_callback(self._journey_tasks.discard)

        self.sink.emit(
            "traffic.user_spawned",
            userId=user_id,
            archetype=archetype.value,
            customer=user.customer.full_name,
            active=active,
            target=window.effective_target,
            timing=config.traffic_timing.value,
        )
        return user

    async def _run_journey(self, user: VirtualUser):
        try:
            await self.runner.run(user)
        except asyncio.CancelledError:
            user.activity = "aborted"
            raise
        except Exception as e:
            user.activity = "faulted"
            self.sink.emit("engine.internal_fault", level="error", loop="journey", userId=user.id, error=repr(e))
        finally:
            self._complete(user)

    def _complete(self, user: VirtualUser):
        with self._lock:
            self._active.pop(user.id, None)
            self._finished_today += 1
            self._durations.append(user.duration)
            if user.current_step is JourneyState.COMPLETED:
                self._orders_today += 1
            elif user.current_step is JourneyState.BOUNCED:
                self._bounced_today += 1
            elif user.current_step is JourneyState.PAYMENT_FAILED:
                self._payment_failures_today += 1
            self._recently_completed.append(user)

        self.sink.emit(
            "traffic.user_completed",
            userId=user.id,
            archetype=user.archetype.value,
            outcome=user.current_step.value if user.is_finished else user.activity,
            durationSeconds=round(user.duration, 1),
            steps=len(user.step_history),
        )

        config = self.store.get()
        if (
            self.running
            and not self._stop_event.is_set()
            and config.enabled
            and config.traffic_timing is TrafficTiming.STEADY
            and self.active_count < config.target_concurrent_users
        ):
            self._spawn_soon(self._replace_later())

    # =========================================================================
    # STATS
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            durations = list(self._durations)
            finished = self._finished_today
            stats = {
                "activeUsers": len(self._active),
                "totalSessionsToday": self._sessions_today,
                "averageSessionDuration": round(sum(durations) / len(durations), 1) if durations else 0,
                "currentActivities": [
                    {"userId": u.id, "archetype": u.archetype.value, "activity": u.activity}
                    for u in self._active.values()
                ],
                "totalOrders": self._orders_today,
                "bounceRate": round(self._bounced_today / finished, 2) if finished else 0,
                "paymentFailures": self._payment_failures_today,
            }
        window = self._window
        stats["running"] = self.running
        stats["effectiveTarget"] = window.effective_target if window else 0
        return stats

    def get_detailed_status(self) -> Dict[str, Any]:
        with self._lock:
            active = [u.to_dict() for u in self._active.values()]
            recent = [u.to_dict() for u in reversed(self._recently_completed)]
        return {
            "config": self.store.get().to_dict(),
            "stats": self.get_stats(),
            "activeUsers": active,
            "recentlyCompleted": recent,
        }
