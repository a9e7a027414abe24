"""Tests for scheduled health monitoring and alerting."""

import asyncio
import pytest

from steadfast.core.errors import UnknownServiceError
from steadfast.core.types import ResilienceStatus, ServiceStatus
from steadfast.resilience.events import EventType
from steadfast.resilience.health import HealthCheckConfig, HealthMonitor, ProbeResult, health_score


def cfg(*probes, **overrides) -> HealthCheckConfig:
    values = {"interval": 10.0, "timeout": 1.0, "retries": 0, "failure_threshold": 3,
              "grace_period": 0.0, "retry_delay": 0.5}
    values.update(overrides)
    return HealthCheckConfig(probes=list(probes), **values)


class Toggle:
    """Probe whose health can be flipped between checks."""

    def __init__(self, healthy: bool = True):
        self.healthy = healthy
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return {"healthy": self.healthy, "details": {"calls": self.calls},
                "error": None if self.healthy else "probe says no"}


@pytest.fixture
def monitor(events, sleep):
    return HealthMonitor(events=events, sleep=sleep)


class TestStatusTransitions:
    async def test_threshold_three_transitions(self, monitor):
        probe = Toggle(healthy=True)
        monitor.register_service("docs", cfg(probe))
        assert (await monitor.check_service("docs")).status == ServiceStatus.HEALTHY

        probe.healthy = False
        r1 = await monitor.check_service("docs")
        assert r1.status == ServiceStatus.DEGRADED
        r2 = await monitor.check_service("docs")
        assert r2.status == ServiceStatus.DEGRADED
        r3 = await monitor.check_service("docs")
        assert r3.status == ServiceStatus.UNHEALTHY
        assert r3.consecutive_failures == 3

        probe.healthy = True
        r4 = await monitor.check_service("docs")
        assert r4.status == ServiceStatus.HEALTHY
        assert monitor.get_service_health("docs").consecutive_failures == 0

    async def test_success_midway_resets(self, monitor):
        probe = Toggle(healthy=False)
        monitor.register_service("docs", cfg(probe))
        await monitor.check_service("docs")
        await monitor.check_service("docs")
        probe.healthy = True
        await monitor.check_service("docs")
        probe.healthy = False
        result = await monitor.check_service("docs")
        assert result.status == ServiceStatus.DEGRADED
        assert result.consecutive_failures == 1

    async def test_no_probes_stays_unknown(self, monitor, events):
        monitor.register_service("cache", cfg())
        result = await monitor.check_service("cache")
        assert result.healthy is False
        assert result.status == ServiceStatus.UNKNOWN
        h = monitor.get_service_health("cache")
        assert h.status == ServiceStatus.UNKNOWN
        assert h.total_checks == 0
        assert events.recent(event_type=EventType.HEALTH_CHECK_SUCCEEDED) == []

    async def test_counters_and_score(self, monitor):
        probe = Toggle(healthy=True)
        monitor.register_service("docs", cfg(probe))
        await monitor.check_service("docs")
        probe.healthy = False
        await monitor.check_service("docs")
        h = monitor.get_service_health("docs")
        assert h.total_checks == 2
        assert h.successful_checks == 1
        assert h.failed_checks == 1
        assert h.health_score == pytest.approx(100 - 20 - 25)
        assert "probe says no" in h.last_error

    def test_health_score_floor(self):
        assert health_score(10, 10, 10) == 0.0
        assert health_score(0, 0, 0) == 100.0


class TestProbing:
    async def test_probe_result_forms(self, monitor):
        async def as_bool():
            return True

        async def as_result():
            return ProbeResult(healthy=True, details={"k": 1})

        monitor.register_service("svc", cfg(as_bool, as_result))
        result = await monitor.check_service("svc")
        assert result.healthy is True
        assert result.details["as_result"] == {"k": 1}

    async def test_probe_exception_is_failure(self, monitor):
        async def ping():
            raise RuntimeError("kaput")

        monitor.register_service("svc", cfg(ping))
        result = await monitor.check_service("svc")
        assert result.healthy is False
        assert "kaput" in result.error

    async def test_hanging_probe_times_out(self, monitor):
        async def hang():
            await asyncio.Event().wait()

        monitor.register_service("svc", cfg(hang, timeout=0.05))
        result = await monitor.check_service("svc")
        assert result.healthy is False
        assert "timed out" in result.error

    async def test_retries_with_fixed_delay(self, monitor, sleep):
        answers = iter([{"healthy": False, "error": "cold"}, {"healthy": True}])
        calls = []

        async def warm():
            calls.append(1)
            return next(answers)

        monitor.register_service("svc", cfg(warm, retries=2, retry_delay=0.5))
        result = await monitor.check_service("svc")
        assert result.healthy is True
        assert len(calls) == 2
        assert sleep.delays == [0.5]

    async def test_exhausted_retries(self, monitor, sleep):
        probe = Toggle(healthy=False)
        monitor.register_service("svc", cfg(probe, retries=2, retry_delay=0.25))
        result = await monitor.check_service("svc")
        assert result.healthy is False
        assert probe.calls == 3
        assert sleep.delays == [0.25, 0.25]

    async def test_unknown_service(self, monitor):
        with pytest.raises(UnknownServiceError):
            await monitor.check_service("ghost")

    async def test_check_all_services(self, monitor):
        monitor.register_service("a", cfg(Toggle(True)))
        monitor.register_service("b", cfg(Toggle(False)))
        results = await monitor.check_all_services()
        assert {r.service: r.healthy for r in results} == {"a": True, "b": False}


class TestAlerts:
    async def test_alert_raised_once_at_threshold(self, monitor, events):
        monitor.register_service("docs", cfg(Toggle(healthy=False)))
        for _ in range(5):
            await monitor.check_service("docs")
        alerts = monitor.get_active_alerts()
        assert len(alerts) == 1
        assert alerts[0].service == "docs"
        assert len(events.recent(event_type=EventType.ALERT_RAISED)) == 1

    async def test_acknowledge_and_resolve(self, monitor):
        monitor.register_service("docs", cfg(Toggle(healthy=False), failure_threshold=1))
        await monitor.check_service("docs")
        alert = monitor.get_active_alerts()[0]

        assert monitor.acknowledge_alert(alert.id) is True
        assert monitor.get_alert(alert.id).acknowledged is True
        assert monitor.get_active_alerts() == [alert]

        assert monitor.resolve_alert(alert.id) is True
        assert monitor.get_active_alerts() == []
        assert monitor.get_alerts(include_resolved=True) == [alert]
        assert monitor.alerts_resolved == 1

    async def test_alerts_do_not_clear_on_recovery(self, monitor):
        probe = Toggle(healthy=False)
        monitor.register_service("docs", cfg(probe, failure_threshold=1))
        await monitor.check_service("docs")
        probe.healthy = True
        await monitor.check_service("docs")
        assert len(monitor.get_active_alerts()) == 1

    def test_unknown_alert_ids(self, monitor):
        assert monitor.acknowledge_alert("nope") is False
        assert monitor.resolve_alert("nope") is False


class TestSystemHealth:
    def test_zero_services_is_degraded(self, monitor):
        assert monitor.get_system_health()["overall"] == ResilienceStatus.DEGRADED

    def test_unprobed_services_are_degraded_not_critical(self, monitor):
        monitor.register_service("docs", cfg(Toggle()))
        system = monitor.get_system_health()
        assert system["overall"] == ResilienceStatus.DEGRADED
        assert system["checked_services"] == 0
        assert system["total_services"] == 1

    async def test_unprobed_services_left_out_of_aggregate(self, monitor):
        monitor.register_service("docs", cfg(Toggle(healthy=True)))
        monitor.register_service("vector", cfg(Toggle(healthy=True)))
        await monitor.check_service("docs")
        system = monitor.get_system_health()
        assert system["overall"] == ResilienceStatus.HEALTHY
        assert system["healthy_services"] == 1
        assert system["checked_services"] == 1

    async def test_aggregation(self, monitor):
        for i in range(10):
            monitor.register_service(f"s{i}", cfg(Toggle(healthy=i < 7)))
        await monitor.check_all_services()
        assert monitor.get_system_health()["overall"] == ResilienceStatus.DEGRADED

        monitor.register_service("s7", cfg(Toggle(healthy=True)))
        monitor.register_service("s8", cfg(Toggle(healthy=True)))
        monitor.register_service("s9", cfg(Toggle(healthy=True)))
        await monitor.check_all_services()
        assert monitor.get_system_health()["overall"] == ResilienceStatus.HEALTHY

    async def test_critical_below_seventy_percent(self, monitor):
        monitor.register_service("a", cfg(Toggle(True)))
        monitor.register_service("b", cfg(Toggle(False)))
        await monitor.check_all_services()
        assert monitor.get_system_health()["overall"] == ResilienceStatus.CRITICAL

    async def test_stats(self, monitor):
        monitor.register_service("a", cfg(Toggle(True)))
        monitor.register_service("b", cfg(Toggle(False), failure_threshold=1))
        await monitor.check_all_services()
        stats = monitor.get_stats()
        assert stats["total_checks"] == 2
        assert stats["failed_checks"] == 1
        assert stats["alerts_generated"] == 1
        assert stats["active_alerts"] == 1


class TestScheduling:
    async def test_start_and_stop_service(self, events):
        probe = Toggle(healthy=True)
        monitor = HealthMonitor(events=events)
        monitor.register_service("svc", cfg(probe, interval=0.01))
        monitor.start()
        assert monitor.is_monitoring("svc")
        for _ in range(100):
            if probe.calls >= 2:
                break
            await asyncio.sleep(0.01)
        assert probe.calls >= 2
        await monitor.stop()
        assert not monitor.is_monitoring("svc")

    async def test_stopping_one_service_leaves_others(self, events):
        monitor = HealthMonitor(events=events)
        monitor.register_service("a", cfg(Toggle(), interval=5.0, grace_period=5.0))
        monitor.register_service("b", cfg(Toggle(), interval=5.0, grace_period=5.0))
        monitor.start()
        assert monitor.stop_service("a") is True
        await asyncio.sleep(0)
        assert not monitor.is_monitoring("a")
        assert monitor.is_monitoring("b")
        await monitor.stop()

    async def test_disabled_service_not_scheduled(self, events):
        monitor = HealthMonitor(events=events)
        monitor.register_service("off", cfg(Toggle(), enabled=False))
        monitor.start()
        assert not monitor.is_monitoring("off")
        await monitor.stop()

    async def test_service_without_probes_not_scheduled(self, events):
        monitor = HealthMonitor(events=events)
        monitor.register_service("cache", cfg())
        monitor.start()
        assert not monitor.is_monitoring("cache")
        await monitor.stop()

    @pytest.mark.parametrize("turns", range(12))
    async def test_stop_ends_busy_loop(self, events, sleep, turns):
        # Instant probe and zero-length sleeps: cancellation can land at any await
        async def instant():
            return True

        monitor = HealthMonitor(events=events, sleep=sleep)
        monitor.register_service("svc", cfg(instant, grace_period=0.0, interval=1.0))
        monitor.start_service("svc")
        task = monitor._tasks["svc"]
        for _ in range(turns):
            await asyncio.sleep(0)
        await asyncio.wait_for(monitor.stop(), timeout=2.0)
        assert task.done()
        assert not monitor.is_monitoring("svc")

    async def test_grace_period_precedes_first_probe(self, events, sleep):
        probe = Toggle()
        monitor = HealthMonitor(events=events, sleep=sleep)
        monitor.register_service("svc", cfg(probe, grace_period=7.0, interval=3.0))
        monitor.start_service("svc")
        for _ in range(50):
            await asyncio.sleep(0)
        await monitor.stop()
        assert sleep.delays[:2] == [7.0, 3.0]
        assert probe.calls >= 1

    async def test_unregister(self, monitor):
        monitor.register_service("svc", cfg())
        assert monitor.unregister_service("svc") is True
        assert monitor.unregister_service("svc") is False
        assert monitor.services == []

    async def test_update_config(self, monitor):
        monitor.register_service("svc", cfg())
        updated = monitor.update_config("svc", failure_threshold=7)
        assert updated.failure_threshold == 7
        assert monitor.get_config("svc").failure_threshold == 7

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            HealthCheckConfig(interval=0)
        with pytest.raises(ValueError):
            HealthCheckConfig(failure_threshold=0)


class TestEvents:
    async def test_status_change_events(self, monitor, events):
        monitor.register_service("svc", cfg(Toggle(healthy=False), failure_threshold=2))
        await monitor.check_service("svc")
        await monitor.check_service("svc")
        changes = events.recent(event_type=EventType.SERVICE_STATUS_CHANGED)
        assert [(e.data["old_status"], e.data["new_status"]) for e in changes] == [
            (ServiceStatus.UNKNOWN, ServiceStatus.DEGRADED),
            (ServiceStatus.DEGRADED, ServiceStatus.UNHEALTHY),
        ]
        assert len(events.recent(event_type=EventType.HEALTH_CHECK_FAILED)) == 2
