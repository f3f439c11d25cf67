"""
ClinicalSentry - Alert Scan Tasks
Celery tasks that scan patient records and store the reconciled alerts
"""

import logging
from typing import Any, Dict, List, Optional

from alert_engine.celery_app import celery_app
from alert_engine.exceptions import AlertStoreError
from alert_engine.schemas import Medication
from alert_engine.services.triage_service import get_triage_service

logger = logging.getLogger(__name__)


@celery_app.task(name="alert_engine.tasks.scan.scan_patient_alerts", bind=True, max_retries=3)
def scan_patient_alerts_task(
    self,
    record: Dict[str, Any],
    proposed_medication: Optional[Dict[str, Any]] = None
) -> dict:
    """
    Scan one patient record asynchronously

    Args:
        record: Patient record as served by the patient-record collaborator
        proposed_medication: Optional medication dict ({name, status})

    Returns:
        ScanResult as dictionary
    """
    try:
        logger.info(f"Starting async alert scan for patient {record.get('id')}")

        medication = Medication(**proposed_medication) if proposed_medication else None
        result = get_triage_service().scan_patient(record, proposed_medication=medication)

        logger.info(
            f"Async scan complete for patient {result.patient_id}: "
            f"{result.counts.total} active alerts"
        )
        return result.model_dump(mode="json")

    except AlertStoreError as e:
        logger.error(f"Alert scan task failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))


@celery_app.task(name="alert_engine.tasks.scan.batch_scan_patients")
def batch_scan_patients_task(records: List[Dict[str, Any]]) -> Dict:
    """
    Scan multiple patient records

    Args:
        records: Patient records

    Returns:
        Per-patient summaries plus collected failures
    """
    service = get_triage_service()
    results = {"scanned": [], "failed": []}

    for record in records:
        patient_id = record.get("id") or record.get("patientId") or record.get("patient_id")
        try:
            result = service.scan_patient(record)
            results["scanned"].append({
                "patient_id": result.patient_id,
                "counts": result.counts.model_dump(),
                "retired_alert_ids": result.retired_alert_ids,
                "detector_faults": len(result.detector_faults),
            })
        except Exception as e:
            logger.error(f"Batch scan failed for patient {patient_id}: {e}")
            results["failed"].append({"patient_id": patient_id, "error": str(e)})

    logger.info(
        f"Batch scan complete: {len(results['scanned'])} scanned, "
        f"{len(results['failed'])} failed"
    )
    return results
