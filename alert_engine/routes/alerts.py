"""
ClinicalSentry - Alert API Routes
Scan, query, acknowledge and dismiss clinical alerts
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import ValidationError

from alert_engine.exceptions import AlertNotFoundError, AlertStoreError, InvalidAlertOperation
from alert_engine.schemas import (
    AcknowledgeRequest, Alert, AlertCandidate, AlertCounts, AlertSeverity, AlertType,
    BulkAcknowledgeRequest, BulkAcknowledgeResult, DismissRequest, MedicationCheckRequest,
    ScanRequest, ScanResult
)
from alert_engine.services.triage_service import TriageService, get_triage_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["Alerts"])


def _store_unavailable(e: AlertStoreError) -> HTTPException:
    logger.error(f"Alert store unavailable: {e}")
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Alert store unavailable"
    )


def _invalid_record(e: Exception) -> HTTPException:
    logger.warning(f"Rejected patient record: {e}")
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=f"Invalid patient record: {str(e)}"
    )


# =============================================================================
# Patient Endpoints
# =============================================================================

@router.post("/patients/{patient_id}/alerts/scan", response_model=ScanResult)
def scan_patient_alerts(
    patient_id: str,
    request: ScanRequest,
    service: TriageService = Depends(get_triage_service)
):
    """
    Scan a patient record and reconcile the patient's alerts

    Re-scanning an unchanged record returns the same alert ids and keeps
    acknowledgments.
    """
    try:
        return service.scan_patient(
            request.patient,
            proposed_medication=request.proposed_medication,
            patient_id=patient_id
        )
    except (ValidationError, ValueError) as e:
        raise _invalid_record(e)
    except AlertStoreError as e:
        raise _store_unavailable(e)


@router.get("/patients/{patient_id}/alerts", response_model=List[Alert])
def list_patient_alerts(
    patient_id: str,
    text: Optional[str] = Query(None, description="Search title, message and type"),
    severity: Optional[AlertSeverity] = Query(None),
    type: Optional[AlertType] = Query(None),
    include_acknowledged: bool = Query(True, description="Include acknowledged and dismissed alerts"),
    service: TriageService = Depends(get_triage_service)
):
    """Stored alerts for a patient, most severe first"""
    try:
        return service.filter_alerts(
            patient_id,
            text=text,
            severity=severity,
            type=type,
            include_acknowledged=include_acknowledged
        )
    except AlertStoreError as e:
        raise _store_unavailable(e)


@router.get("/patients/{patient_id}/alerts/summary", response_model=AlertCounts)
def patient_alert_summary(
    patient_id: str,
    service: TriageService = Depends(get_triage_service)
):
    """Unacknowledged alert counts by severity"""
    try:
        return service.get_counts(patient_id)
    except AlertStoreError as e:
        raise _store_unavailable(e)


@router.post("/patients/{patient_id}/medications/check", response_model=List[AlertCandidate])
def check_medication(
    patient_id: str,
    request: MedicationCheckRequest,
    service: TriageService = Depends(get_triage_service)
):
    """Preview interaction and allergy findings for a medication before prescribing"""
    try:
        return service.check_medication(request.patient, request.medication, patient_id=patient_id)
    except (ValidationError, ValueError) as e:
        raise _invalid_record(e)


# =============================================================================
# Alert Lifecycle Endpoints
# =============================================================================

@router.post("/alerts/ack-bulk", response_model=BulkAcknowledgeResult)
def bulk_acknowledge_alerts(
    request: BulkAcknowledgeRequest,
    service: TriageService = Depends(get_triage_service)
):
    """Acknowledge several alerts; per-alert failures are reported, not raised"""
    try:
        return service.bulk_acknowledge(request.alert_ids, request.actor_id)
    except AlertStoreError as e:
        raise _store_unavailable(e)


@router.post("/alerts/{alert_id}/ack", response_model=Alert)
def acknowledge_alert(
    alert_id: str,
    request: AcknowledgeRequest,
    service: TriageService = Depends(get_triage_service)
):
    """Acknowledge an alert (idempotent)"""
    try:
        return service.acknowledge(alert_id, request.actor_id)
    except AlertNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Alert {alert_id} not found")
    except InvalidAlertOperation as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.reason)
    except AlertStoreError as e:
        raise _store_unavailable(e)


@router.post("/alerts/{alert_id}/dismiss", response_model=Alert)
def dismiss_alert(
    alert_id: str,
    request: Optional[DismissRequest] = None,
    service: TriageService = Depends(get_triage_service)
):
    """Dismiss a non-critical alert; critical alerts must be acknowledged"""
    try:
        return service.dismiss(alert_id, request.actor_id if request else None)
    except AlertNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Alert {alert_id} not found")
    except InvalidAlertOperation as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.reason)
    except AlertStoreError as e:
        raise _store_unavailable(e)
