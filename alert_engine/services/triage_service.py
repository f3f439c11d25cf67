"""
ClinicalSentry - Triage Service
Entry point used by the API and the Celery workers: scan, query and
acknowledge a patient's clinical alerts
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from datetime import datetime

from alert_engine.modules.aggregator import AlertAggregator
from alert_engine.modules.detectors import AllergyDetector, DrugInteractionDetector
from alert_engine.modules.knowledge_base import ClinicalKnowledgeBase, default_knowledge_base
from alert_engine.modules.lifecycle import AlertLifecycleManager
from alert_engine.modules.normalization import build_patient_snapshot
from alert_engine.modules.query import AlertQueryService
from alert_engine.schemas import (
    Alert, AlertCandidate, AlertCounts, AlertSeverity, AlertType,
    BulkAcknowledgeResult, Medication, PatientSnapshot, ScanResult, utcnow
)
from alert_engine.services.alert_store import AlertStore, get_alert_store

logger = logging.getLogger(__name__)

PatientInput = Union[PatientSnapshot, Dict[str, Any]]


class TriageService:
    """Scans patient snapshots and manages the resulting alert state"""

    def __init__(
        self,
        store: Optional[AlertStore] = None,
        knowledge_base: Optional[ClinicalKnowledgeBase] = None,
        aggregator: Optional[AlertAggregator] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.clock = clock or utcnow
        self.store = store or get_alert_store()
        self.knowledge_base = knowledge_base or default_knowledge_base()
        self.aggregator = aggregator or AlertAggregator(
            knowledge_base=self.knowledge_base, clock=self.clock
        )
        self.lifecycle = AlertLifecycleManager(self.store, clock=self.clock)

        # Prescribing preview only looks at medication safety
        self._medication_checker = AlertAggregator(
            detectors=[
                DrugInteractionDetector(self.knowledge_base),
                AllergyDetector(self.knowledge_base),
            ],
            clock=self.clock,
            parallel=False
        )

    @staticmethod
    def _snapshot(patient: PatientInput, patient_id: Optional[str] = None) -> PatientSnapshot:
        if isinstance(patient, PatientSnapshot):
            return patient
        return build_patient_snapshot(patient, patient_id=patient_id)

    # =========================================================================
    # Scanning
    # =========================================================================

    def scan_patient(
        self,
        patient: PatientInput,
        proposed_medication: Optional[Medication] = None,
        patient_id: Optional[str] = None
    ) -> ScanResult:
        """
        Run every detector against a patient and reconcile with stored state

        Args:
            patient: PatientSnapshot or raw patient record
            proposed_medication: Medication about to be prescribed, if any
            patient_id: Overrides the id found in a raw record

        Returns:
            ScanResult with the reconciled alerts, unacknowledged counts,
            retired alert ids and any detector faults
        """
        snapshot = self._snapshot(patient, patient_id)
        logger.info(f"Scanning patient {snapshot.patient_id}")

        with self.store.patient_lock(snapshot.patient_id):
            previous = self.store.get_patient_alerts(snapshot.patient_id)
            outcome, faults = self.aggregator.scan(snapshot, previous, proposed_medication)
            self.store.replace_patient_alerts(
                snapshot.patient_id, outcome.alerts, outcome.retired_alert_ids
            )

        counts = AlertQueryService(outcome.alerts).counts_by_severity()
        logger.info(
            f"Scan complete for patient {snapshot.patient_id}: {counts.total} active alerts "
            f"({counts.critical} critical), {len(outcome.retired_alert_ids)} retired, "
            f"{len(faults)} detector faults"
        )

        return ScanResult(
            patient_id=snapshot.patient_id,
            alerts=outcome.alerts,
            counts=counts,
            retired_alert_ids=outcome.retired_alert_ids,
            detector_faults=faults,
            scanned_at=self.clock(),
        )

    def check_medication(
        self,
        patient: PatientInput,
        medication: Medication,
        patient_id: Optional[str] = None
    ) -> List[AlertCandidate]:
        """Interaction and allergy candidates if the medication were added; nothing is stored"""
        snapshot = self._snapshot(patient, patient_id)
        detection = self._medication_checker.detect(snapshot, proposed_medication=medication)
        logger.info(
            f"Medication check for patient {snapshot.patient_id} ({medication.name}): "
            f"{len(detection.candidates)} findings"
        )
        return detection.candidates

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def acknowledge(self, alert_id: str, actor_id: str) -> Alert:
        return self.lifecycle.acknowledge(alert_id, actor_id)

    def bulk_acknowledge(self, alert_ids: Iterable[str], actor_id: str) -> BulkAcknowledgeResult:
        return self.lifecycle.bulk_acknowledge(alert_ids, actor_id)

    def dismiss(self, alert_id: str, actor_id: Optional[str] = None) -> Alert:
        return self.lifecycle.dismiss(alert_id, actor_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_alerts(self, patient_id: str, include_acknowledged: bool = True) -> List[Alert]:
        """Stored alerts for a patient, most severe first"""
        query = AlertQueryService(self.store.get_patient_alerts(patient_id))
        if include_acknowledged:
            return query.alerts
        return query.unacknowledged()

    def get_counts(self, patient_id: str) -> AlertCounts:
        return AlertQueryService(self.store.get_patient_alerts(patient_id)).counts_by_severity()

    def filter_alerts(
        self,
        patient_id: str,
        text: Optional[str] = None,
        severity: Optional[AlertSeverity] = None,
        type: Optional[AlertType] = None,
        include_acknowledged: bool = True
    ) -> List[Alert]:
        alerts = self.get_alerts(patient_id, include_acknowledged=include_acknowledged)
        return AlertQueryService(alerts).filter(text=text, severity=severity, type=type)


# =============================================================================
# Global Service Instance
# =============================================================================

_triage_service: Optional[TriageService] = None


def get_triage_service() -> TriageService:
    """Get or create the shared triage service"""
    global _triage_service
    if _triage_service is None:
        _triage_service = TriageService()
    return _triage_service
