"""
Shared degraded-mode context.

The failure scenario engine is the only writer. The CRUD endpoints (and the
test API in tests/conftest.py) read it on every request to decide whether to
reject, slow down or fail a call.
"""

import threading
from typing import Optional, Dict, Any

SERVICES = ("products", "orders", "reservations")

SERVICE_OK = "ok"
SERVICE_DEGRADED = "degraded"
SERVICE_DOWN = "down"

DEGRADED_DELAY_MS = 5000
DB_POOL_WAIT_MS = 5000


class DegradedMode:
    """Lock-protected flags plus per-service state."""

    def __init__(self, time_scale: float = 1.0):
        self._lock = threading.Lock()
        self.time_scale = time_scale
        self._reset_locked()

    def _reset_locked(self):
        self._scenario: Optional[str] = None
        self._flags: Dict[str, bool] = {
            "dbPoolExhausted": False,
            "paymentGatewayDown": False,
            "memoryLeaking": False,
            "cascadingFailure": False,
            "dataCorrupted": False,
            "systemFailure": False,
        }
        self._services: Dict[str, str] = {name: SERVICE_OK for name in SERVICES}
        self._memory_pressure_ms = 0
        self._connection_queue = 0

    # -------------------------------------------------------------------------
    # writer side (failure scenario engine)
    # -------------------------------------------------------------------------

    def activate(self, scenario: str, **flags: bool):
        with self._lock:
            self._scenario = scenario
            for name, value in flags.items():
                if name not in self._flags:
                    raise KeyError(f"unknown degraded-mode flag: {name}")
                self._flags[name] = value

    def set_service_state(self, service: str, state: str):
        if service not in SERVICES:
            raise KeyError(f"unknown service: {service}")
        with self._lock:
            self._services[service] = state

    def set_flag(self, name: str, value: bool = True):
        with self._lock:
            if name not in self._flags:
                raise KeyError(f"unknown degraded-mode flag: {name}")
            self._flags[name] = value

    def set_memory_pressure(self, delay_ms: int):
        with self._lock:
            self._memory_pressure_ms = delay_ms

    def set_connection_queue(self, length: int):
        with self._lock:
            self._connection_queue = length

    def clear(self):
        """Drop every flag and service state back to normal."""
        with self._lock:
            self._reset_locked()

    # -------------------------------------------------------------------------
    # reader side (collaborators)
    # -------------------------------------------------------------------------

    @property
    def active(self) -> bool:
        with self._lock:
            return self._scenario is not None

    @property
    def scenario(self) -> Optional[str]:
        with self._lock:
            return self._scenario

    def flag(self, name: str) -> bool:
        with self._lock:
            return self._flags.get(name, False)

    def service_state(self, service: str) -> str:
        with self._lock:
            return self._services.get(service, SERVICE_OK)

    def is_service_unavailable(self, service: str) -> bool:
        with self._lock:
            if self._flags["systemFailure"]:
                return True
            if service == "orders" and self._flags["dbPoolExhausted"]:
                return True
            return self._services.get(service) == SERVICE_DOWN

    def latency_penalty_ms(self, service: Optional[str] = None) -> float:
        """Extra delay a collaborator should add before answering."""
        with self._lock:
            penalty = self._memory_pressure_ms
            if service is not None:
                if self._services.get(service) == SERVICE_DEGRADED:
                    penalty += DEGRADED_DELAY_MS
                if service == "orders" and self._flags["dbPoolExhausted"]:
                    penalty += DB_POOL_WAIT_MS
            return penalty * self.time_scale

    def payments_failing(self) -> bool:
        return self.flag("paymentGatewayDown")

    def db_pool_exhausted(self) -> bool:
        return self.flag("dbPoolExhausted")

    def data_corrupted(self) -> bool:
        return self.flag("dataCorrupted")

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "active": self._scenario is not None,
                "scenario": self._scenario,
                "flags": dict(self._flags),
                "services": dict(self._services),
                "memoryPressureDelayMs": self._memory_pressure_ms,
                "connectionQueueLength": self._connection_queue,
            }
