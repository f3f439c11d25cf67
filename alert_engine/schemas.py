"""
ClinicalSentry - Clinical Alert Schemas
Pydantic models for patient snapshots, alert candidates and triage alerts
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any, Union
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    """Timezone-aware current time used for every alert timestamp"""
    return datetime.now(timezone.utc)


# ============================================================================
# Enumerations
# ============================================================================

class AlertSeverity(str, Enum):
    """Clinical alert severity levels"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class AlertType(str, Enum):
    """Clinical alert types, one per detector"""
    DRUG_INTERACTION = "drug-interaction"
    ALLERGY = "allergy"
    CRITICAL_LAB = "critical-lab"
    CRITICAL_VITAL = "critical-vital"
    OVERDUE_FOLLOWUP = "overdue-followup"


class AlertState(str, Enum):
    """Acknowledgment lifecycle states"""
    UNACKNOWLEDGED = "unacknowledged"
    ACKNOWLEDGED = "acknowledged"
    DISMISSED = "dismissed"


# Lower rank sorts first
SEVERITY_ORDER: Dict[AlertSeverity, int] = {
    AlertSeverity.CRITICAL: 0,
    AlertSeverity.HIGH: 1,
    AlertSeverity.MEDIUM: 2,
    AlertSeverity.LOW: 3,
}


def severity_rank(severity: AlertSeverity) -> int:
    """Position of a severity in the total order (critical first)"""
    return SEVERITY_ORDER[AlertSeverity(severity)]


# ============================================================================
# Patient Snapshot Models
# ============================================================================

class Medication(BaseModel):
    """Medication on the patient's list"""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    status: str = Field(default="active")

    @property
    def is_active(self) -> bool:
        return self.status.strip().lower() == "active"


class LabObservation(BaseModel):
    """Single normalized lab result value"""
    model_config = ConfigDict(frozen=True)

    test_name: str
    value: Optional[Union[float, int, str]] = None
    unit: Optional[str] = None
    observed_at: Optional[datetime] = None
    source_id: Optional[str] = Field(None, description="Id of the originating lab result")


class VitalSigns(BaseModel):
    """Latest vital signs; raw values are parsed by the vital detector"""
    model_config = ConfigDict(frozen=True)

    blood_pressure: Optional[str] = Field(None, description="'systolic/diastolic' string")
    heart_rate: Optional[Union[float, int, str]] = None
    temperature: Optional[Union[float, int, str]] = None
    oxygen: Optional[Union[float, int, str]] = None


class Appointment(BaseModel):
    """Scheduled or past appointment"""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    status: str = "scheduled"
    appointment_type: Optional[str] = None


class PatientSnapshot(BaseModel):
    """Point-in-time, read-only view of one patient's clinical record"""
    model_config = ConfigDict(frozen=True)

    patient_id: str = Field(..., min_length=1)
    medications: List[Medication] = Field(default_factory=list)
    allergies: List[str] = Field(default_factory=list)
    lab_observations: List[LabObservation] = Field(default_factory=list)
    vitals: VitalSigns = Field(default_factory=VitalSigns)
    appointments: List[Appointment] = Field(default_factory=list)

    @field_validator("allergies")
    @classmethod
    def drop_blank_allergies(cls, v: List[str]) -> List[str]:
        """Blank allergy strings would match every medication"""
        return [a.strip() for a in v if a and a.strip()]

    @property
    def active_medications(self) -> List[Medication]:
        return [m for m in self.medications if m.is_active]


# ============================================================================
# Clinical Alert Models
# ============================================================================

class AlertCandidate(BaseModel):
    """Detector output before identity and lifecycle state are assigned"""
    type: AlertType
    severity: AlertSeverity
    natural_key: str = Field(..., description="Data-derived key of the underlying condition")
    title: str
    message: str
    action_required: bool = True
    related_data: Dict[str, Any] = Field(default_factory=dict)


class Alert(BaseModel):
    """Clinical safety alert with acknowledgment state"""
    id: str
    patient_id: str
    type: AlertType
    severity: AlertSeverity
    natural_key: str
    title: str
    message: str
    state: AlertState = AlertState.UNACKNOWLEDGED
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    dismissed_at: Optional[datetime] = None
    dismissed_by: Optional[str] = None
    reviewed_severity: Optional[AlertSeverity] = Field(
        default=None, description="Severity when the alert was acknowledged or dismissed"
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    action_required: bool = True
    related_data: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_lifecycle_fields(self) -> "Alert":
        """Acknowledgment fields and state must agree"""
        if self.acknowledged != (self.state == AlertState.ACKNOWLEDGED):
            raise ValueError("acknowledged flag does not match alert state")
        if self.acknowledged and (self.acknowledged_at is None or not self.acknowledged_by):
            raise ValueError("acknowledged alerts require acknowledged_at and acknowledged_by")
        if self.state == AlertState.DISMISSED and self.severity == AlertSeverity.CRITICAL:
            raise ValueError("critical alerts cannot be dismissed")
        return self

    @property
    def is_active(self) -> bool:
        """Unacknowledged alerts are the only ones that count toward triage"""
        return self.state == AlertState.UNACKNOWLEDGED


class AlertCounts(BaseModel):
    """Unacknowledged alert counts by severity"""
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    total: int = 0


class DetectorFault(BaseModel):
    """A detector that failed or timed out during a scan"""
    detector: str
    error: str
    alert_type: Optional[AlertType] = None
    timed_out: bool = False


class ScanResult(BaseModel):
    """Outcome of one reconciled scan of a patient snapshot"""
    patient_id: str
    alerts: List[Alert] = Field(default_factory=list)
    counts: AlertCounts = Field(default_factory=AlertCounts)
    retired_alert_ids: List[str] = Field(default_factory=list)
    detector_faults: List[DetectorFault] = Field(default_factory=list)
    scanned_at: datetime = Field(default_factory=utcnow)


class BulkAcknowledgeResult(BaseModel):
    """Per-id outcome of a bulk acknowledgment"""
    acknowledged: List[str] = Field(default_factory=list)
    already_acknowledged: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict, description="alert id -> reason")

    @property
    def succeeded(self) -> List[str]:
        return self.acknowledged + self.already_acknowledged


# ============================================================================
# API Request Models
# ============================================================================

class ScanRequest(BaseModel):
    """Raw patient record plus an optional medication about to be prescribed"""
    patient: Dict[str, Any] = Field(default_factory=dict)
    proposed_medication: Optional[Medication] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "patient": {
                    "medications": [{"name": "Warfarin 5mg", "status": "Active"}],
                    "allergies": ["Penicillin"],
                    "bp": "190/125",
                    "labResults": [{"id": "lab-1", "testName": "Potassium", "value": "6.4", "unit": "mmol/L"}],
                    "appointments": [{"id": "apt-1", "date": "2024-01-10", "status": "scheduled"}],
                },
                "proposed_medication": {"name": "Aspirin 81mg"},
            }
        }
    )


class MedicationCheckRequest(BaseModel):
    """Check a medication against the patient before prescribing"""
    patient: Dict[str, Any] = Field(default_factory=dict)
    medication: Medication


class AcknowledgeRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)


class BulkAcknowledgeRequest(BaseModel):
    alert_ids: List[str] = Field(default_factory=list)
    actor_id: str = Field(..., min_length=1)


class DismissRequest(BaseModel):
    actor_id: Optional[str] = None
