"""
Unit tests for alert acknowledgment and dismissal
"""

import pytest
from datetime import datetime, timezone

from alert_engine.exceptions import AlertNotFoundError, InvalidAlertOperation
from alert_engine.modules.lifecycle import AlertLifecycleManager
from alert_engine.schemas import AlertSeverity, AlertState, AlertType


@pytest.fixture
def lifecycle(store, clock):
    return AlertLifecycleManager(store, clock=clock)


@pytest.fixture
def stored(store, make_alert):
    """Critical, high and medium alerts for one patient"""
    alerts = {
        "critical": make_alert(
            type=AlertType.DRUG_INTERACTION, severity=AlertSeverity.CRITICAL,
            natural_key="interaction:anticoagulant+nsaid", title="Critical Drug Interaction"
        ),
        "high": make_alert(),
        "medium": make_alert(
            type=AlertType.OVERDUE_FOLLOWUP, severity=AlertSeverity.MEDIUM,
            natural_key="followup:overdue", title="Overdue Follow-up"
        ),
    }
    store.replace_patient_alerts("patient-1", list(alerts.values()))
    return alerts


class TestAcknowledge:
    """Test acknowledgment"""

    def test_acknowledge_sets_actor_and_time(self, lifecycle, stored, store, now):
        alert = lifecycle.acknowledge(stored["critical"].id, "dr-smith")

        assert alert.state == AlertState.ACKNOWLEDGED
        assert alert.acknowledged
        assert alert.acknowledged_by == "dr-smith"
        assert alert.acknowledged_at == now
        assert alert.reviewed_severity == AlertSeverity.CRITICAL
        assert store.get_alert(alert.id).acknowledged

    def test_double_acknowledge_keeps_first(self, store, stored):
        first = AlertLifecycleManager(
            store, clock=lambda: datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
        ).acknowledge(stored["high"].id, "dr-first")
        second = AlertLifecycleManager(
            store, clock=lambda: datetime(2024, 6, 16, 9, 0, tzinfo=timezone.utc)
        ).acknowledge(stored["high"].id, "dr-second")

        assert second.acknowledged_by == "dr-first"
        assert second.acknowledged_at == first.acknowledged_at

    def test_unknown_alert(self, lifecycle, stored):
        with pytest.raises(AlertNotFoundError):
            lifecycle.acknowledge("critical-lab-doesnotexist", "dr-smith")

    @pytest.mark.parametrize("actor", ["", "   ", None])
    def test_actor_required(self, lifecycle, stored, actor):
        with pytest.raises(InvalidAlertOperation):
            lifecycle.acknowledge(stored["high"].id, actor)

    def test_dismissed_alert_cannot_be_acknowledged(self, lifecycle, stored):
        lifecycle.dismiss(stored["medium"].id, "dr-smith")

        with pytest.raises(InvalidAlertOperation):
            lifecycle.acknowledge(stored["medium"].id, "dr-smith")


class TestBulkAcknowledge:
    def test_collects_failures_without_aborting(self, lifecycle, stored):
        lifecycle.acknowledge(stored["high"].id, "dr-first")
        lifecycle.dismiss(stored["medium"].id)

        result = lifecycle.bulk_acknowledge(
            [stored["critical"].id, "missing-id", stored["high"].id, stored["medium"].id, stored["critical"].id],
            "dr-smith"
        )

        assert result.acknowledged == [stored["critical"].id]
        assert result.already_acknowledged == [stored["high"].id]
        assert set(result.failed) == {"missing-id", stored["medium"].id}
        assert result.failed["missing-id"] == "not found"
        assert result.succeeded == [stored["critical"].id, stored["high"].id]


class TestDismiss:
    """Test dismissal rules"""

    def test_critical_cannot_be_dismissed(self, lifecycle, stored, store):
        with pytest.raises(InvalidAlertOperation) as exc_info:
            lifecycle.dismiss(stored["critical"].id, "dr-smith")

        assert "acknowledge" in str(exc_info.value)
        assert store.get_alert(stored["critical"].id).state == AlertState.UNACKNOWLEDGED

    def test_non_critical_dismissed(self, lifecycle, stored, now):
        alert = lifecycle.dismiss(stored["medium"].id, "dr-smith")

        assert alert.state == AlertState.DISMISSED
        assert alert.dismissed_by == "dr-smith"
        assert alert.dismissed_at == now
        assert not alert.acknowledged
        assert alert.reviewed_severity == AlertSeverity.MEDIUM

    def test_dismiss_without_actor(self, lifecycle, stored):
        assert lifecycle.dismiss(stored["high"].id).dismissed_by is None

    def test_dismiss_twice_is_noop(self, lifecycle, stored):
        first = lifecycle.dismiss(stored["medium"].id, "dr-first")
        second = lifecycle.dismiss(stored["medium"].id, "dr-second")

        assert second.dismissed_by == first.dismissed_by

    def test_acknowledged_cannot_be_dismissed(self, lifecycle, stored):
        lifecycle.acknowledge(stored["high"].id, "dr-smith")

        with pytest.raises(InvalidAlertOperation):
            lifecycle.dismiss(stored["high"].id)

    def test_unknown_alert(self, lifecycle, stored):
        with pytest.raises(AlertNotFoundError):
            lifecycle.dismiss("missing-id")
