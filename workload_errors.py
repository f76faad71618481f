"""
Exceptions raised at the control-surface boundary.

Only validation and conflict errors are ever raised to callers. Injected
faults, HTTP errors and sink failures are recorded as outcomes instead.
"""

from typing import Any, Dict, Optional


class WorkloadError(Exception):
    """Base error for the workload engine.

    Attributes:
        message: Human-readable reason, shown to the operator as-is
        code: Machine-readable error code
        details: Extra context (offending field, allowed values, ...)
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# VALIDATION ERRORS
# =============================================================================

class ConfigValidationError(WorkloadError):
    """A config value is outside its allowed range or set."""

    def __init__(self, field_name: str, value: Any, reason: str):
        super().__init__(
            f"Invalid {field_name}={value!r}: {reason}",
            code="invalid_config",
            details={"field": field_name, "value": value, "reason": reason},
        )
        self.field_name = field_name


class InvalidScenario(WorkloadError):
    def __init__(self, scenario_id: Any, valid_scenarios: list):
        super().__init__(
            f"Unknown failure scenario: {scenario_id!r}",
            code="invalid_scenario",
            details={"scenario": scenario_id, "validScenarios": list(valid_scenarios)},
        )


class InvalidDuration(WorkloadError):
    def __init__(self, duration: Any, minimum: int, maximum: int):
        super().__init__(
            f"Duration must be between {minimum} and {maximum} seconds (got {duration!r})",
            code="invalid_duration",
            details={"duration": duration, "min": minimum, "max": maximum},
        )


# =============================================================================
# CONFLICT ERRORS
# =============================================================================

class AlreadyRunning(WorkloadError):
    """A bounded run (stress test, checkout simulation) is in progress; stop it first."""

    def __init__(self, session_id: Optional[str] = None, what: str = "A stress test"):
        super().__init__(
            f"{what} is already running",
            code="already_running",
            details={"sessionId": session_id},
        )


class AlreadyActive(WorkloadError):
    """A failure scenario is in progress; stop it before triggering another."""

    def __init__(self, current_scenario: Optional[str] = None):
        super().__init__(
            "A failure simulation is already active",
            code="already_active",
            details={"currentScenario": current_scenario},
        )
