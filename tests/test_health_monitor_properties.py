"""
Property-based tests for the Health Monitor module.

Uses Hypothesis for property-based testing to verify the per-source health
state machine: failures below the threshold keep the previous status, the
threshold turns a source unhealthy and any success makes it healthy again.
"""

from io import StringIO

from hypothesis import given, settings
from hypothesis import strategies as st

from hosts_aggregator.audit_logger import AuditLogger
from hosts_aggregator.config import HealthConfig
from hosts_aggregator.enums import FetchStatus, HealthStatus, LogLevel
from hosts_aggregator.health_monitor import HealthMonitor, content_hash
from hosts_aggregator.host_store import HostStore
from hosts_aggregator.models import FetchOutcome


SOURCE_ID = "source-1"

FAILURES = [FetchStatus.ERROR, FetchStatus.TIMEOUT]
SUCCESSES = [FetchStatus.SUCCESS, FetchStatus.NOT_MODIFIED]


def outcome(status: FetchStatus, content: bytes = b"0.0.0.0 ads.example.com\n") -> FetchOutcome:
    if status == FetchStatus.SUCCESS:
        return FetchOutcome(
            source_id=SOURCE_ID,
            status=status,
            content=content,
            http_status=200,
            content_hash=content_hash(content),
        )
    if status == FetchStatus.NOT_MODIFIED:
        return FetchOutcome(source_id=SOURCE_ID, status=status, http_status=304)
    return FetchOutcome(source_id=SOURCE_ID, status=status, error_message=f"{status.value} happened")


def expected_status(history: list[FetchStatus], threshold: int) -> HealthStatus:
    """Reference model of the health state machine."""
    status = HealthStatus.UNKNOWN
    failures = 0
    for item in history:
        if item.is_success:
            failures = 0
            status = HealthStatus.HEALTHY
        else:
            failures += 1
            if failures >= threshold:
                status = HealthStatus.UNHEALTHY
    return status


class TestHealthStateMachineProperty:
    """
    Property-based tests for health transitions.
    """

    @given(
        history=st.lists(st.sampled_from(FAILURES + SUCCESSES), min_size=1, max_size=30),
        threshold=st.integers(min_value=1, max_value=5),
    )
    @settings(max_examples=200)
    def test_status_follows_state_machine(self, history: list[FetchStatus], threshold: int) -> None:
        monitor = HealthMonitor(HostStore(), HealthConfig(failure_threshold=threshold))

        for item in history:
            health = monitor.record(outcome(item))

        assert health.status == expected_status(history, threshold)

    @given(
        history=st.lists(st.sampled_from(FAILURES + SUCCESSES), min_size=1, max_size=30),
    )
    @settings(max_examples=100)
    def test_consecutive_failures_counts_trailing_failures(self, history: list[FetchStatus]) -> None:
        monitor = HealthMonitor(HostStore())

        for item in history:
            health = monitor.record(outcome(item))

        trailing = 0
        for item in reversed(history):
            if item.is_success:
                break
            trailing += 1
        assert health.consecutive_failures == trailing

    @given(
        failures=st.integers(min_value=1, max_value=10),
        threshold=st.integers(min_value=1, max_value=10),
    )
    @settings(max_examples=100)
    def test_failures_from_unknown(self, failures: int, threshold: int) -> None:
        monitor = HealthMonitor(HostStore(), HealthConfig(failure_threshold=threshold))

        for _ in range(failures):
            health = monitor.record(outcome(FetchStatus.ERROR))

        if failures >= threshold:
            assert health.status == HealthStatus.UNHEALTHY
        else:
            assert health.status == HealthStatus.UNKNOWN
        assert health.last_failure_at is not None


class TestHealthScenarios:
    """Example-based tests for health bookkeeping."""

    def test_never_checked_source_is_unknown(self) -> None:
        monitor = HealthMonitor(HostStore())
        health = monitor.get("missing")
        assert health.status == HealthStatus.UNKNOWN
        assert health.consecutive_failures == 0

    def test_first_success_marks_content_changed(self) -> None:
        monitor = HealthMonitor(HostStore())
        health = monitor.record(outcome(FetchStatus.SUCCESS))
        assert health.status == HealthStatus.HEALTHY
        assert health.content_changed is True

    def test_same_body_is_not_a_change(self) -> None:
        monitor = HealthMonitor(HostStore())
        monitor.record(outcome(FetchStatus.SUCCESS, b"a"))
        assert monitor.record(outcome(FetchStatus.SUCCESS, b"a")).content_changed is False
        assert monitor.record(outcome(FetchStatus.SUCCESS, b"b")).content_changed is True

    def test_not_modified_is_healthy_and_unchanged(self) -> None:
        monitor = HealthMonitor(HostStore())
        monitor.record(outcome(FetchStatus.SUCCESS, b"a"))
        health = monitor.record(outcome(FetchStatus.NOT_MODIFIED))
        assert health.status == HealthStatus.HEALTHY
        assert health.content_changed is False
        assert health.last_content_hash == content_hash(b"a")

    def test_failure_keeps_last_content_hash(self) -> None:
        monitor = HealthMonitor(HostStore())
        monitor.record(outcome(FetchStatus.SUCCESS, b"a"))
        health = monitor.record(outcome(FetchStatus.TIMEOUT))
        assert health.last_content_hash == content_hash(b"a")
        assert health.error_message == "TIMEOUT happened"
        assert monitor.record(outcome(FetchStatus.SUCCESS, b"a")).content_changed is False

    def test_healthy_source_below_threshold_stays_healthy(self) -> None:
        monitor = HealthMonitor(HostStore(), HealthConfig(failure_threshold=3))
        monitor.record(outcome(FetchStatus.SUCCESS))
        monitor.record(outcome(FetchStatus.ERROR))
        health = monitor.record(outcome(FetchStatus.ERROR))
        assert health.status == HealthStatus.HEALTHY
        assert health.consecutive_failures == 2

        health = monitor.record(outcome(FetchStatus.ERROR))
        assert health.status == HealthStatus.UNHEALTHY

    def test_transition_is_logged(self) -> None:
        logger = AuditLogger(output_stream=StringIO(), min_level=LogLevel.DEBUG)
        monitor = HealthMonitor(HostStore(), HealthConfig(failure_threshold=1), logger)

        monitor.record(outcome(FetchStatus.ERROR))

        messages = [e.message for e in logger.entries]
        assert "Source health changed: unknown -> unhealthy" in messages

    def test_report_counts(self) -> None:
        store = HostStore()
        healthy = store.add_source("healthy", "https://lists.example/a.txt")
        broken = store.add_source("broken", "https://lists.example/b.txt")
        store.add_source("fresh", "https://lists.example/c.txt")
        monitor = HealthMonitor(store, HealthConfig(failure_threshold=1))

        monitor.record(FetchOutcome(source_id=healthy.id, status=FetchStatus.SUCCESS, content=b"x"))
        monitor.record(FetchOutcome(source_id=broken.id, status=FetchStatus.ERROR, error_message="boom"))

        report = monitor.report()
        assert report.total_sources == 3
        assert report.healthy_sources == 1
        assert report.unhealthy_sources == 1
        assert report.unknown_sources == 1
