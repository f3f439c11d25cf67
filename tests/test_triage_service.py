"""
Integration tests for the triage service (scan, reconcile, acknowledge)
"""

import pytest

from alert_engine.exceptions import AlertNotFoundError, InvalidAlertOperation
from alert_engine.modules.aggregator import AlertAggregator
from alert_engine.modules.detectors import CriticalLabDetector
from alert_engine.services.triage_service import TriageService
from alert_engine.schemas import AlertSeverity, AlertState, AlertType, Medication


def potassium_record(value, **extra):
    record = {
        "id": "patient-1",
        "labResults": [{"id": "lab-1", "testName": "Potassium", "value": value, "unit": "mmol/L"}],
    }
    record.update(extra)
    return record


class TestScanPatient:
    """Test end-to-end scanning"""

    def test_scan_raw_record(self, service):
        record = {
            "id": "patient-1",
            "medications": [{"name": "Warfarin 5mg", "status": "active"}, "Aspirin 81mg"],
            "allergies": ["Penicillin"],
            "bp": "190/125",
            "labResults": [{"testName": "Potassium", "value": "5.8", "unit": "mmol/L"}],
            "appointments": [{"id": "apt-1", "date": "2024-06-14", "status": "scheduled"}],
        }

        result = service.scan_patient(record)

        assert result.patient_id == "patient-1"
        assert [a.type for a in result.alerts] == [
            AlertType.DRUG_INTERACTION,
            AlertType.CRITICAL_VITAL,
            AlertType.CRITICAL_LAB,
            AlertType.OVERDUE_FOLLOWUP,
        ]
        assert result.counts.critical == 2
        assert result.counts.high == 1
        assert result.counts.medium == 1
        assert result.counts.total == 4
        assert result.detector_faults == []

    def test_scan_snapshot(self, service, make_snapshot):
        result = service.scan_patient(make_snapshot(bp="190/125"))

        assert len(result.alerts) == 1
        assert "190/125" in result.alerts[0].message
        assert "Hypertensive Crisis" in result.alerts[0].message

    def test_single_overdue_appointment(self, service, make_snapshot):
        snapshot = make_snapshot(appointments=[{"id": "apt-1", "date": "2024-06-14", "status": "scheduled"}])

        result = service.scan_patient(snapshot)

        assert len(result.alerts) == 1
        assert result.alerts[0].severity == AlertSeverity.MEDIUM
        assert "1 overdue" in result.alerts[0].message

    def test_rescan_is_idempotent(self, service):
        record = potassium_record("6.4", medications=["Warfarin", "Aspirin"])

        first = service.scan_patient(record)
        service.acknowledge(first.alerts[0].id, "dr-smith")
        second = service.scan_patient(record)

        assert [a.id for a in second.alerts] == [a.id for a in first.alerts]
        assert second.alerts[0].state == AlertState.ACKNOWLEDGED
        assert second.alerts[0].acknowledged_by == "dr-smith"
        assert second.alerts[1].state == AlertState.UNACKNOWLEDGED
        assert second.retired_alert_ids == []

    def test_resolved_lab_is_retired(self, service, store):
        critical = service.scan_patient(potassium_record("6.4"))
        alert_id = critical.alerts[0].id

        resolved = service.scan_patient(potassium_record("4.5"))

        assert resolved.alerts == []
        assert resolved.retired_alert_ids == [alert_id]
        assert store.get_alert(alert_id) is None
        with pytest.raises(AlertNotFoundError):
            service.acknowledge(alert_id, "dr-smith")

    def test_resolved_acknowledged_lab_kept_as_history(self, service):
        critical = service.scan_patient(potassium_record("6.4"))
        alert_id = critical.alerts[0].id
        service.acknowledge(alert_id, "dr-smith")

        resolved = service.scan_patient(potassium_record("4.5"))

        assert resolved.retired_alert_ids == []
        assert [a.id for a in resolved.alerts] == [alert_id]
        assert resolved.alerts[0].state == AlertState.ACKNOWLEDGED
        assert resolved.counts.total == 0

    def test_escalated_lab_reopens(self, service):
        high = service.scan_patient(potassium_record("5.8"))
        service.dismiss(high.alerts[0].id, "dr-smith")

        escalated = service.scan_patient(potassium_record("6.8"))

        assert escalated.alerts[0].id == high.alerts[0].id
        assert escalated.alerts[0].severity == AlertSeverity.CRITICAL
        assert escalated.alerts[0].state == AlertState.UNACKNOWLEDGED

    def test_acknowledged_alert_not_reopened_after_dip_and_return(self, service):
        """Test escalation is judged against the acknowledged severity"""
        critical = service.scan_patient(potassium_record("2.5"))
        alert_id = critical.alerts[0].id
        service.acknowledge(alert_id, "dr-smith")

        improved = service.scan_patient(potassium_record("3.2"))
        assert improved.alerts[0].severity == AlertSeverity.HIGH
        assert improved.alerts[0].state == AlertState.ACKNOWLEDGED

        relapsed = service.scan_patient(potassium_record("2.5"))

        assert relapsed.alerts[0].id == alert_id
        assert relapsed.alerts[0].severity == AlertSeverity.CRITICAL
        assert relapsed.alerts[0].state == AlertState.ACKNOWLEDGED
        assert relapsed.alerts[0].acknowledged_by == "dr-smith"
        assert relapsed.counts.critical == 0

    def test_failed_detector_keeps_its_alerts(self, service, store, clock, monkeypatch):
        first = service.scan_patient(potassium_record("2.5"))
        alert_id = first.alerts[0].id

        lab_detector = CriticalLabDetector(service.knowledge_base)

        def broken(*args, **kwargs):
            raise RuntimeError("reference ranges unavailable")

        monkeypatch.setattr(lab_detector, "evaluate", broken)
        degraded = TriageService(
            store=store,
            aggregator=AlertAggregator(detectors=[lab_detector], clock=clock, parallel=False),
            clock=clock
        )

        result = degraded.scan_patient(potassium_record("2.5"))

        assert [f.detector for f in result.detector_faults] == [lab_detector.detector_id]
        assert result.retired_alert_ids == []
        assert [a.id for a in result.alerts] == [alert_id]
        assert result.counts.critical == 1
        assert store.get_alert(alert_id) is not None

    def test_nested_lab_value_does_not_abort_scan(self, service):
        record = {
            "id": "patient-1",
            "bp": "190/125",
            "labResults": [{"testName": "Potassium", "value": {"amount": 6.5}}],
        }

        result = service.scan_patient(record)

        assert [a.type for a in result.alerts] == [AlertType.CRITICAL_VITAL]
        assert result.counts.critical == 1

    def test_patients_are_independent(self, service):
        service.scan_patient(potassium_record("6.4"))
        other = service.scan_patient(potassium_record("6.4", id="patient-2"))

        assert other.alerts[0].id != service.get_alerts("patient-1")[0].id
        assert service.get_counts("patient-1").total == 1


class TestTriageWorkflow:
    """Test acknowledge/dismiss effects on counts"""

    @pytest.fixture
    def scanned(self, service):
        record = potassium_record(
            "5.8",
            medications=["Warfarin", "Aspirin"],
            appointments=[{"date": "2024-06-01", "status": "scheduled"}],
        )
        return {a.severity: a for a in service.scan_patient(record).alerts}

    def test_counts_exclude_acknowledged_and_dismissed(self, service, scanned):
        assert service.get_counts("patient-1").total == 3

        service.acknowledge(scanned[AlertSeverity.CRITICAL].id, "dr-smith")
        service.dismiss(scanned[AlertSeverity.MEDIUM].id, "dr-smith")

        counts = service.get_counts("patient-1")
        assert (counts.critical, counts.high, counts.medium, counts.low, counts.total) == (0, 1, 0, 0, 1)

    def test_dismiss_critical_fails_and_keeps_counts(self, service, scanned):
        with pytest.raises(InvalidAlertOperation):
            service.dismiss(scanned[AlertSeverity.CRITICAL].id)

        assert service.get_counts("patient-1").critical == 1

    def test_bulk_acknowledge(self, service, scanned):
        ids = [a.id for a in scanned.values()]

        result = service.bulk_acknowledge(ids + ["missing"], "dr-smith")

        assert sorted(result.acknowledged) == sorted(ids)
        assert list(result.failed) == ["missing"]
        assert service.get_counts("patient-1").total == 0

    def test_get_and_filter_alerts(self, service, scanned):
        service.acknowledge(scanned[AlertSeverity.HIGH].id, "dr-smith")

        assert len(service.get_alerts("patient-1")) == 3
        assert len(service.get_alerts("patient-1", include_acknowledged=False)) == 2
        assert [a.id for a in service.filter_alerts("patient-1", text="warfarin")] == [
            scanned[AlertSeverity.CRITICAL].id
        ]
        assert service.filter_alerts("patient-1", severity="high", include_acknowledged=False) == []


class TestCheckMedication:
    """Test the prescribing preview"""

    def test_preview_reports_interaction_and_allergy(self, service):
        record = {"id": "patient-1", "medications": ["Warfarin"], "allergies": ["Aspirin"]}

        findings = service.check_medication(record, Medication(name="Aspirin 81mg"))

        assert {f.type for f in findings} == {AlertType.DRUG_INTERACTION, AlertType.ALLERGY}
        assert all(f.severity == AlertSeverity.CRITICAL for f in findings)

    def test_preview_ignores_labs_and_persists_nothing(self, service, store):
        record = potassium_record("7.0", medications=["Metformin"])

        findings = service.check_medication(record, Medication(name="Lisinopril"))

        assert findings == []
        assert store.get_patient_alerts("patient-1") == []
