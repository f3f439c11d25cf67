"""
Shared fixtures for alert engine tests
"""

import pytest
from datetime import datetime, timezone

from alert_engine.modules.aggregator import derive_alert_id
from alert_engine.schemas import (
    Alert, AlertSeverity, AlertState, AlertType, Appointment, LabObservation,
    Medication, PatientSnapshot, VitalSigns
)
from alert_engine.services.alert_store import InMemoryAlertStore
from alert_engine.services.triage_service import TriageService

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def store():
    return InMemoryAlertStore()


@pytest.fixture
def service(store, clock):
    return TriageService(store=store, clock=clock)


@pytest.fixture
def make_snapshot():
    """Build a PatientSnapshot from short-hand keyword arguments"""

    def _make(
        patient_id="patient-1",
        medications=(),
        allergies=(),
        labs=(),
        bp=None,
        heart_rate=None,
        temperature=None,
        oxygen=None,
        appointments=()
    ):
        return PatientSnapshot(
            patient_id=patient_id,
            medications=[Medication(name=m) if isinstance(m, str) else m for m in medications],
            allergies=list(allergies),
            lab_observations=[
                LabObservation(test_name=name, value=value, unit=unit)
                for name, value, unit in labs
            ],
            vitals=VitalSigns(
                blood_pressure=bp,
                heart_rate=heart_rate,
                temperature=temperature,
                oxygen=oxygen,
            ),
            appointments=[
                a if isinstance(a, Appointment) else Appointment(**a) for a in appointments
            ],
        )

    return _make


@pytest.fixture
def make_alert():
    """Build a stored Alert with a derived id"""

    def _make(
        patient_id="patient-1",
        type=AlertType.CRITICAL_LAB,
        severity=AlertSeverity.HIGH,
        natural_key="lab:potassium",
        state=AlertState.UNACKNOWLEDGED,
        title="Critical Lab Value: Potassium",
        message="Potassium: 5.8 mmol/L - Abnormal",
        **fields
    ):
        data = {
            "id": derive_alert_id(patient_id, type, natural_key),
            "patient_id": patient_id,
            "type": type,
            "severity": severity,
            "natural_key": natural_key,
            "title": title,
            "message": message,
            "state": state,
            "created_at": NOW,
            "updated_at": NOW,
        }
        if state == AlertState.ACKNOWLEDGED:
            data.update(acknowledged=True, acknowledged_at=NOW, acknowledged_by="dr-first")
        elif state == AlertState.DISMISSED:
            data.update(dismissed_at=NOW, dismissed_by="dr-first")
        data.update(fields)

        return Alert(**data)

    return _make
