from __future__ import annotations

import pytest

from lan_agent.backoff import BackoffGovernor, compute_backoff_seconds
from lan_agent.circuit import CircuitBreaker, device_key, monitor_key
from lan_agent.hysteresis import derive_monitor_state, is_transition
from lan_agent.models import BackoffState, MonitorState, Status


def test_circuit_opens_after_three_downs_and_skips_for_cooldown() -> None:
    cb = CircuitBreaker(failure_threshold=3, cooldown_seconds=180)
    key = monitor_key("m1")

    cb.record(key, Status.DOWN, 0.0)
    cb.record(key, Status.DOWN, 10.0)
    assert cb.is_open(key, 10.0) is False

    st = cb.record(key, Status.DOWN, 20.0)
    assert st.fail_streak == 3
    assert st.cooldown_until == 200.0
    assert cb.is_open(key, 21.0) is True
    assert cb.is_open(key, 199.9) is True
    assert cb.is_open(key, 200.0) is False


def test_circuit_skip_does_not_mutate_and_next_down_rearms() -> None:
    cb = CircuitBreaker()
    key = device_key("d1")
    for t in (0.0, 1.0, 2.0):
        cb.record(key, Status.DOWN, t)
    before = cb.snapshot()[key]
    for t in (10.0, 50.0, 100.0):
        assert cb.is_open(key, t) is True
    assert cb.snapshot()[key] == before

    st = cb.record(key, Status.DOWN, 500.0)
    assert st.fail_streak == 4
    assert st.cooldown_until == 680.0


@pytest.mark.parametrize("status", [Status.UP, Status.DEGRADED])
def test_circuit_non_down_resets(status: Status) -> None:
    cb = CircuitBreaker()
    key = monitor_key("m1")
    for t in (0.0, 1.0, 2.0):
        cb.record(key, Status.DOWN, t)
    st = cb.record(key, status, 3.0)
    assert st.fail_streak == 0
    assert st.cooldown_until == 0.0
    assert cb.is_open(key, 3.0) is False


def test_monitor_and_device_keys_do_not_collide() -> None:
    cb = CircuitBreaker(failure_threshold=1)
    cb.record(monitor_key("x"), Status.DOWN, 0.0)
    assert cb.is_open(monitor_key("x"), 1.0) is True
    assert cb.is_open(device_key("x"), 1.0) is False


@pytest.mark.parametrize(
    ("count", "expected"),
    [(1, 600), (2, 1200), (3, 2400), (4, 3600), (40, 3600)],
)
def test_compute_backoff_seconds(count: int, expected: int) -> None:
    assert compute_backoff_seconds(count, 600, 3600) == expected


def test_third_rate_limit_backs_off_2400_and_clean_run_resets() -> None:
    gov = BackoffGovernor(base_seconds=600, cap_seconds=3600)
    for t in (0.0, 1.0, 2.0):
        st = gov.record_rate_limit("d1", t, error="rate limited (status)")
    assert st.rate_limit_count == 3
    assert st.backoff_seconds == 2400
    assert st.next_allowed_at == 2402.0
    assert st.reason == "rate_limited"
    assert gov.is_backed_off("d1", 100.0) is True
    assert gov.is_backed_off("d1", 2402.0) is False

    st = gov.record_clean("d1", 3000.0)
    assert st.rate_limit_count == 0
    assert st.backoff_seconds == 0
    assert st.next_allowed_at is None
    assert gov.is_backed_off("d1", 3000.0) is False


def test_per_device_overrides_win() -> None:
    gov = BackoffGovernor(base_seconds=600, cap_seconds=3600)
    st = gov.record_rate_limit("d1", 0.0, base=60, cap=100)
    st = gov.record_rate_limit("d1", 1.0, base=60, cap=100)
    assert st.backoff_seconds == 100


def test_iface_cooldown_is_independent_of_clean_runs() -> None:
    gov = BackoffGovernor(iface_cooldown_seconds=1800)
    gov.arm_iface_cooldown("d1", 100.0, error="rate limited (iface)")
    assert gov.is_iface_cooling("d1", 101.0) is True
    assert gov.is_backed_off("d1", 101.0) is False

    gov.record_clean("d1", 200.0)
    assert gov.is_iface_cooling("d1", 201.0) is True
    assert gov.is_iface_cooling("d1", 1900.0) is False

    st = gov.arm_iface_cooldown("d1", 2000.0, seconds=60)
    assert st.iface_next_allowed_at == 2060.0
    assert st.reason == "iface_rate_limited"


def test_record_error_keeps_cooldowns() -> None:
    gov = BackoffGovernor()
    gov.record_rate_limit("d1", 0.0)
    st = gov.record_error("d1", 5.0, "RuntimeError: boom")
    assert st.last_error == "RuntimeError: boom"
    assert st.next_allowed_at == 600.0
    assert st.rate_limit_count == 1


def test_merge_persisted_newer_row_wins() -> None:
    gov = BackoffGovernor()
    gov.record_rate_limit("d1", 1000.0)

    stale = BackoffState(device_id="d1", backoff_seconds=0, rate_limit_count=0, updated_at=500.0)
    gov.merge_persisted([stale])
    assert gov.is_backed_off("d1", 1001.0) is True

    newer = BackoffState(device_id="d1", backoff_seconds=0, next_allowed_at=None, rate_limit_count=0, updated_at=1500.0)
    remote_only = BackoffState(device_id="d2", backoff_seconds=1200, next_allowed_at=3000.0, rate_limit_count=2, updated_at=10.0)
    gov.merge_persisted([newer, remote_only])
    assert gov.is_backed_off("d1", 1001.0) is False
    assert gov.is_backed_off("d2", 2000.0) is True


def test_drain_dirty_returns_changed_rows_once() -> None:
    gov = BackoffGovernor()
    gov.record_rate_limit("d2", 0.0)
    gov.arm_iface_cooldown("d1", 0.0)
    gov.record_clean("d3", 0.0)

    rows = gov.drain_dirty()
    assert [r.device_id for r in rows] == ["d1", "d2"]
    assert rows[1].to_report()["backoff_seconds"] == 600
    assert gov.drain_dirty() == []


def test_hysteresis_two_downs_flip_effective_status() -> None:
    s1 = derive_monitor_state(MonitorState(), Status.DOWN)
    assert s1.effective_status is Status.UP
    assert s1.failure_count == 1
    assert is_transition(MonitorState(), s1) is False

    s2 = derive_monitor_state(s1, Status.DOWN)
    assert s2.effective_status is Status.DOWN
    assert s2.failure_count == 2
    assert s2.surface_status is Status.DOWN
    assert is_transition(s1, s2) is True


def test_hysteresis_degraded_counts_as_success() -> None:
    down = MonitorState(failure_count=2, effective_status=Status.DOWN)
    s = derive_monitor_state(down, Status.DEGRADED, success_threshold=1)
    assert s.effective_status is Status.UP
    assert s.surface_status is Status.DEGRADED
    assert s.failure_count == 0
    assert s.success_count == 1


def test_hysteresis_recovery_threshold_and_floors() -> None:
    down = MonitorState(failure_count=3, effective_status=Status.DOWN)
    s1 = derive_monitor_state(down, Status.UP, failure_threshold=2, success_threshold=2)
    assert s1.effective_status is Status.DOWN
    s2 = derive_monitor_state(s1, Status.UP, failure_threshold=2, success_threshold=2)
    assert s2.effective_status is Status.UP

    # Thresholds below one behave like one.
    flipped = derive_monitor_state(MonitorState(), Status.DOWN, failure_threshold=0)
    assert flipped.effective_status is Status.DOWN
