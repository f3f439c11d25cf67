"""
ClinicalSentry Snapshot Normalization
Converts workspace patient records into a PatientSnapshot once, at ingestion
"""

import logging
import re
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from dateutil import parser as date_parser

from alert_engine.exceptions import MalformedObservation
from alert_engine.schemas import (
    Appointment, LabObservation, Medication, PatientSnapshot, VitalSigns
)

logger = logging.getLogger(__name__)

_LEADING_NUMBER = re.compile(r"^\s*([-+]?(?:\d+\.?\d*|\.\d+))")


# =============================================================================
# Value Parsing
# =============================================================================

def parse_numeric(value: Any, field: str = "value") -> float:
    """
    Parse a lab or vital value into a float

    Accepts numbers and strings with a leading number ("6.4", "6.4 mmol/L",
    "150,000"). Anything else raises MalformedObservation.
    """
    if value is None or isinstance(value, bool):
        raise MalformedObservation(field, value)
    if isinstance(value, (int, float)):
        if value != value:  # NaN
            raise MalformedObservation(field, value)
        return float(value)
    if isinstance(value, str):
        match = _LEADING_NUMBER.match(value.replace(",", ""))
        if match:
            return float(match.group(1))
    raise MalformedObservation(field, value)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a date/time string; naive values are taken as UTC"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = date_parser.parse(str(value))
        except (ValueError, OverflowError) as e:
            logger.debug(f"Ignoring unparsable timestamp {value!r}: {e}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _first(record: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Value of the first key present (camelCase and snake_case records)"""
    for key in keys:
        if key in record and record[key] is not None:
            return record[key]
    return default


def _scalar(value: Any, field: str) -> Any:
    """Number or string value, or None for nested structures and booleans"""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        if value is not None:
            logger.debug(f"Ignoring non-scalar {field}: {value!r}")
        return None
    return value


def _text(value: Any, field: str) -> Optional[str]:
    value = _scalar(value, field)
    return str(value) if value is not None else None


# =============================================================================
# Section Normalizers
# =============================================================================

def normalize_medications(raw: Any) -> List[Medication]:
    medications = []
    for item in raw or []:
        if isinstance(item, str):
            if item.strip():
                medications.append(Medication(name=item.strip()))
        elif isinstance(item, dict):
            name = _first(item, "name", "medication", "drug")
            if not name or not str(name).strip():
                logger.debug(f"Skipping medication without a name: {item}")
                continue
            medications.append(Medication(
                name=str(name).strip(),
                status=str(_first(item, "status", default="active"))
            ))
        elif isinstance(item, Medication):
            medications.append(item)
    return medications


def normalize_allergies(raw: Any) -> List[str]:
    if not raw:
        return []
    if isinstance(raw, str):
        raw = raw.split(",")
    allergies = []
    for item in raw:
        if isinstance(item, dict):
            item = _first(item, "name", "allergen", "substance", default="")
        if item and str(item).strip():
            allergies.append(str(item).strip())
    return allergies


def normalize_lab_results(raw: Any) -> List[LabObservation]:
    """
    Flatten lab results into one observation per value

    A result carries either a flat value/unit or a nested `results` map
    keyed by component. The parent test name names a single-component map;
    each component key names the entries of a multi-component panel.
    """
    observations = []
    for lab in raw or []:
        if isinstance(lab, LabObservation):
            observations.append(lab)
            continue
        if not isinstance(lab, dict):
            continue

        test_name = _first(lab, "testName", "test_name", "name")
        source_id = _first(lab, "id")
        observed_at = parse_timestamp(
            _first(lab, "resultDate", "result_date", "collectedDate", "collected_date",
                   "observedAt", "observed_at", "orderedDate", "ordered_date", "date")
        )
        flat_value = _first(lab, "value")

        if flat_value is not None and flat_value != "":
            if not test_name:
                continue
            value = _scalar(flat_value, f"{test_name} value")
            if value is None:
                continue
            observations.append(LabObservation(
                test_name=str(test_name),
                value=value,
                unit=_text(_first(lab, "unit"), "lab unit"),
                observed_at=observed_at,
                source_id=str(source_id) if source_id is not None else None,
            ))
            continue

        results = _first(lab, "results", default={})
        if not isinstance(results, dict):
            continue
        for component, entry in results.items():
            if isinstance(entry, dict):
                value, unit = entry.get("value"), entry.get("unit")
            else:
                value, unit = entry, None
            name = test_name if (len(results) == 1 and test_name) else component
            value = _scalar(value, f"{name} value")
            if value is None:
                continue
            observations.append(LabObservation(
                test_name=str(name),
                value=value,
                unit=_text(unit, "lab unit"),
                observed_at=observed_at,
                source_id=str(source_id) if source_id is not None else None,
            ))

    return observations


def normalize_vitals(record: Dict[str, Any]) -> VitalSigns:
    vitals = _first(record, "vitals", "vitalSigns", "vital_signs", default={})
    if isinstance(vitals, list):
        # Most recent reading last
        vitals = vitals[-1] if vitals else {}
    if isinstance(vitals, VitalSigns):
        return vitals
    if not isinstance(vitals, dict):
        logger.debug(f"Ignoring vitals of unexpected shape: {type(vitals).__name__}")
        vitals = {}

    blood_pressure = _first(record, "bp", "bloodPressure", "blood_pressure")
    if blood_pressure is None:
        blood_pressure = _first(vitals, "bp", "bloodPressure", "blood_pressure")
    if blood_pressure is None:
        systolic = _scalar(_first(vitals, "systolic"), "systolic")
        diastolic = _scalar(_first(vitals, "diastolic"), "diastolic")
        if systolic is not None and diastolic is not None:
            blood_pressure = f"{systolic}/{diastolic}"

    return VitalSigns(
        blood_pressure=_text(blood_pressure, "blood pressure"),
        heart_rate=_scalar(_first(vitals, "heartRate", "heart_rate", "pulse"), "heart rate"),
        temperature=_scalar(_first(vitals, "temperature", "temp"), "temperature"),
        oxygen=_scalar(
            _first(vitals, "oxygen", "oxygenSaturation", "oxygen_saturation", "spo2"), "oxygen"
        ),
    )


def normalize_appointments(raw: Any) -> List[Appointment]:
    appointments = []
    for apt in raw or []:
        if isinstance(apt, Appointment):
            appointments.append(apt)
        elif isinstance(apt, dict):
            apt_id = _first(apt, "id")
            appointments.append(Appointment(
                id=str(apt_id) if apt_id is not None else None,
                date=_text(_first(apt, "date"), "appointment date"),
                time=_text(_first(apt, "time"), "appointment time"),
                status=str(_first(apt, "status", default="scheduled")).strip().lower(),
                appointment_type=_text(
                    _first(apt, "type", "appointmentType", "appointment_type"), "appointment type"
                ),
            ))
    return appointments


# =============================================================================
# Public API
# =============================================================================

def build_patient_snapshot(record: Dict[str, Any], patient_id: Optional[str] = None) -> PatientSnapshot:
    """
    Build a PatientSnapshot from a workspace patient record

    Args:
        record: Patient record as served by the patient-record collaborator
        patient_id: Overrides the id found in the record

    Returns:
        Normalized, read-only snapshot
    """
    pid = patient_id or _first(record, "id", "patientId", "patient_id")
    if pid is None or str(pid).strip() == "":
        raise ValueError("Patient record has no id")

    snapshot = PatientSnapshot(
        patient_id=str(pid),
        medications=normalize_medications(_first(record, "medications")),
        allergies=normalize_allergies(_first(record, "allergies")),
        lab_observations=normalize_lab_results(
            _first(record, "labResults", "lab_results", "labObservations", "lab_observations")
        ),
        vitals=normalize_vitals(record),
        appointments=normalize_appointments(_first(record, "appointments")),
    )

    logger.debug(
        f"Normalized patient {snapshot.patient_id}: {len(snapshot.medications)} medications, "
        f"{len(snapshot.lab_observations)} lab observations, {len(snapshot.appointments)} appointments"
    )
    return snapshot
