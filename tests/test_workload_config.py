import json

import pytest

from workload_config import (
    CheckoutSimulatorConfig,
    ConfigStore,
    JourneyPattern,
    StressTestConfig,
    TrafficSettings,
    TrafficTiming,
    WorkloadConfig,
    load_engine_config,
)
from workload_errors import ConfigValidationError, WorkloadError


def test_workload_config_defaults() -> None:
    config = WorkloadConfig()
    assert config.enabled is False
    assert config.target_concurrent_users == 5
    assert config.journey_pattern is JourneyPattern.MIXED
    assert config.traffic_timing is TrafficTiming.STEADY


@pytest.mark.parametrize("target", [-1, 101, 2.5, "5", True])
def test_workload_config_rejects_bad_target(target) -> None:
    with pytest.raises(ConfigValidationError) as excinfo:
        WorkloadConfig(target_concurrent_users=target)
    assert excinfo.value.field_name == "targetConcurrentUsers"


def test_workload_config_accepts_enum_strings_and_rejects_unknown() -> None:
    config = WorkloadConfig(journey_pattern="buyers", traffic_timing="burst")
    assert config.journey_pattern is JourneyPattern.BUYERS
    assert config.traffic_timing is TrafficTiming.BURST

    with pytest.raises(ConfigValidationError) as excinfo:
        WorkloadConfig(traffic_timing="midnight")
    assert "steady" in excinfo.value.message


def test_workload_config_from_dict_camel_case_round_trip() -> None:
    data = {"enabled": True, "targetConcurrentUsers": 12, "journeyPattern": "researchers", "trafficTiming": "peak"}
    config = WorkloadConfig.from_dict(data)
    assert config.target_concurrent_users == 12
    assert config.to_dict() == data


def test_workload_config_from_dict_rejects_unknown_keys() -> None:
    with pytest.raises(ConfigValidationError):
        WorkloadConfig.from_dict({"enabled": True, "maxUsers": 3})


def test_workload_config_merged_applies_partial_update() -> None:
    base = WorkloadConfig(enabled=True, target_concurrent_users=4)
    merged = base.merged({"trafficTiming": "low", "target_concurrent_users": 8})
    assert merged.enabled is True
    assert merged.target_concurrent_users == 8
    assert merged.traffic_timing is TrafficTiming.LOW
    assert base.target_concurrent_users == 4


def test_stress_config_defaults_and_derived_values() -> None:
    config = StressTestConfig()
    assert config.to_dict() == {
        "durationSeconds": 30,
        "requestsPerSecond": 5,
        "concurrentRequests": 3,
        "errorRatePercent": 20,
    }
    assert config.tick_interval == pytest.approx(0.2)
    assert config.expected_requests == 30 * 5 * 3


@pytest.mark.parametrize(
    "field_name,value",
    [
        ("duration_seconds", 9),
        ("duration_seconds", 301),
        ("requests_per_second", 0),
        ("requests_per_second", 21),
        ("concurrent_requests", 51),
        ("error_rate_percent", 51),
        ("error_rate_percent", -1),
    ],
)
def test_stress_config_rejects_out_of_range(field_name, value) -> None:
    with pytest.raises(ConfigValidationError):
        StressTestConfig(**{field_name: value})


@pytest.mark.parametrize(
    "field_name,value",
    [("duration_seconds", 10), ("duration_seconds", 300), ("concurrent_requests", 50), ("error_rate_percent", 0)],
)
def test_stress_config_accepts_bounds(field_name, value) -> None:
    assert getattr(StressTestConfig(**{field_name: value}), field_name) == value


def test_stress_config_from_dict_accepts_short_aliases() -> None:
    config = StressTestConfig.from_dict({"duration": 10, "rps": 5, "concurrent": 2, "errorRate": 20})
    assert config == StressTestConfig(10, 5, 2, 20)

    with pytest.raises(ConfigValidationError):
        StressTestConfig.from_dict({"duration": 10, "bogus": 1})


def test_checkout_config_defaults_and_bounds() -> None:
    config = CheckoutSimulatorConfig()
    assert config.to_dict() == {"orderCount": 10, "delayBetweenOrdersMs": 2000, "orderType": "random"}
    CheckoutSimulatorConfig(order_count=1, delay_between_orders_ms=100)
    CheckoutSimulatorConfig(order_count=100, delay_between_orders_ms=60000)


@pytest.mark.parametrize("field_name,kwargs", [
    ("orderCount", {"order_count": 0}),
    ("orderCount", {"order_count": 101}),
    ("delayBetweenOrdersMs", {"delay_between_orders_ms": 99}),
    ("delayBetweenOrdersMs", {"delay_between_orders_ms": 60001}),
    ("orderType", {"order_type": "drive-thru"}),
])
def test_checkout_config_rejects_out_of_range(field_name, kwargs) -> None:
    with pytest.raises(ConfigValidationError) as excinfo:
        CheckoutSimulatorConfig(**kwargs)
    assert excinfo.value.field_name == field_name


def test_checkout_config_from_dict() -> None:
    config = CheckoutSimulatorConfig.from_dict({"orderCount": 3, "delayBetweenOrdersMs": 250, "orderType": "pickup"})
    assert CheckoutSimulatorConfig.from_dict(config.to_dict()) == config
    with pytest.raises(ConfigValidationError):
        CheckoutSimulatorConfig.from_dict({"orders": 3, "express": True})


def test_traffic_settings_validation() -> None:
    with pytest.raises(ConfigValidationError):
        TrafficSettings(bounce_rate=1.5)
    with pytest.raises(ConfigValidationError):
        TrafficSettings(spawn_interval_range=(10.0, 5.0))
    settings = TrafficSettings.from_dict({"spawnIntervalRange": [5, 10], "timeScale": 0.5})
    assert settings.spawn_interval_range == (5, 10)
    assert settings.time_scale == 0.5


def test_config_store_last_writer_wins() -> None:
    store = ConfigStore()
    first = WorkloadConfig(enabled=True, target_concurrent_users=3)
    second = WorkloadConfig(enabled=True, target_concurrent_users=7)

    store.set(first)
    previous = store.set(second)

    assert previous == first
    assert store.get() == second
    assert store.version == 2


def test_config_store_rejects_plain_dicts() -> None:
    with pytest.raises(ConfigValidationError):
        ConfigStore().set({"enabled": True})


def test_load_engine_config(tmp_path) -> None:
    path = tmp_path / "workload.json"
    path.write_text(json.dumps({
        "baseUrl": "http://demo:3001",
        "workload": {"enabled": True, "targetConcurrentUsers": 9, "trafficTiming": "normal"},
        "stressTest": {"durationSeconds": 20, "requestsPerSecond": 2, "concurrentRequests": 4, "errorRatePercent": 0},
        "checkoutSimulator": {"orders": 5, "delayMs": 500, "orderType": "delivery"},
        "traffic": {"bounceRate": 0.3},
    }))

    config = load_engine_config(str(path))

    assert config.base_url == "http://demo:3001"
    assert config.workload.target_concurrent_users == 9
    assert config.stress_test.concurrent_requests == 4
    assert config.traffic.bounce_rate == 0.3
    assert config.checkout_simulator == CheckoutSimulatorConfig(5, 500, "delivery")


def test_load_engine_config_defaults_missing_sections(tmp_path) -> None:
    path = tmp_path / "empty.json"
    path.write_text("{}")
    config = load_engine_config(str(path))
    assert config.workload == WorkloadConfig()
    assert config.stress_test is None
    assert config.checkout_simulator is None


def test_validation_error_serializes() -> None:
    with pytest.raises(WorkloadError) as excinfo:
        StressTestConfig(requests_per_second=99)
    payload = excinfo.value.to_dict()
    assert payload["error"] == "invalid_config"
    assert payload["details"]["field"] == "requestsPerSecond"
