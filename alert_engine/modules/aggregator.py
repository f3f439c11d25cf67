"""
ClinicalSentry Alert Aggregator
Runs every detector, assigns stable alert identities and reconciles each scan
against the previous one
"""

import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple
from datetime import datetime

from alert_engine.config import settings
from alert_engine.modules.detectors import (
    AlertDetector, AllergyDetector, CriticalLabDetector, CriticalVitalDetector,
    DrugInteractionDetector, FollowUpDetector
)
from alert_engine.modules.knowledge_base import ClinicalKnowledgeBase, default_knowledge_base
from alert_engine.schemas import (
    Alert, AlertCandidate, AlertSeverity, AlertState, AlertType, DetectorFault, Medication,
    PatientSnapshot, severity_rank, utcnow
)

logger = logging.getLogger(__name__)


def derive_alert_id(patient_id: str, alert_type: AlertType, natural_key: str) -> str:
    """Deterministic alert id for a patient's underlying condition"""
    alert_type = AlertType(alert_type)
    digest = hashlib.sha256(
        f"{patient_id}|{alert_type.value}|{natural_key}".encode("utf-8")
    ).hexdigest()
    return f"{alert_type.value}-{digest[:16]}"


@dataclass
class DetectionOutcome:
    """Candidates from one detection pass plus any detector faults"""
    candidates: List[AlertCandidate] = field(default_factory=list)
    faults: List[DetectorFault] = field(default_factory=list)


@dataclass
class ReconciliationOutcome:
    """Reconciled alert set for a patient"""
    alerts: List[Alert] = field(default_factory=list)
    retired_alert_ids: List[str] = field(default_factory=list)


# =============================================================================
# Alert Aggregator
# =============================================================================

class AlertAggregator:
    """
    Main alert aggregation engine
    Evaluates all detectors and reconciles their output with prior state
    """

    def __init__(
        self,
        detectors: Optional[List[AlertDetector]] = None,
        knowledge_base: Optional[ClinicalKnowledgeBase] = None,
        clock: Optional[Callable[[], datetime]] = None,
        parallel: Optional[bool] = None,
        timeout_seconds: Optional[float] = None
    ):
        """Initialize aggregator with the registered detectors, in order"""
        self.clock = clock or utcnow
        self.parallel = settings.detector_parallel if parallel is None else parallel
        self.timeout_seconds = timeout_seconds or settings.detector_timeout_seconds

        if detectors is not None:
            self.detectors: List[AlertDetector] = list(detectors)
        else:
            kb = knowledge_base or default_knowledge_base()
            self.detectors = []

            if settings.rules_drug_interactions:
                self.detectors.append(DrugInteractionDetector(kb))
            if settings.rules_allergies:
                self.detectors.append(AllergyDetector(kb))
            if settings.rules_critical_labs:
                self.detectors.append(CriticalLabDetector(kb))
            if settings.rules_critical_vitals:
                self.detectors.append(CriticalVitalDetector(kb))
            if settings.rules_overdue_followups:
                self.detectors.append(FollowUpDetector(kb, clock=self.clock))

        logger.info(
            f"Initialized alert aggregator with {len(self.detectors)} detectors "
            f"(parallel={self.parallel})"
        )

    # =========================================================================
    # Detection
    # =========================================================================

    def detect(
        self,
        snapshot: PatientSnapshot,
        proposed_medication: Optional[Medication] = None
    ) -> DetectionOutcome:
        """
        Evaluate all detectors against a snapshot

        A detector that raises or times out is logged and reported as a
        fault; the remaining detectors still contribute candidates.

        Returns:
            Severity-sorted candidates with duplicate natural keys removed
        """
        logger.info(f"Evaluating {len(self.detectors)} detectors for patient {snapshot.patient_id}")

        if self.parallel and len(self.detectors) > 1:
            results, faults = self._run_parallel(snapshot, proposed_medication)
        else:
            results, faults = self._run_sequential(snapshot, proposed_medication)

        # Registration order first, then a stable severity sort keeps it as tiebreak
        candidates: List[AlertCandidate] = []
        for detector in self.detectors:
            found = results.get(detector.detector_id, [])
            if found:
                logger.info(f"Detector {detector.detector_id} produced {len(found)} candidates")
                candidates.extend(found)

        candidates.sort(key=lambda c: severity_rank(c.severity))

        unique: List[AlertCandidate] = []
        seen = set()
        for candidate in candidates:
            key = (candidate.type, candidate.natural_key)
            if key in seen:
                logger.debug(f"Dropping duplicate candidate {candidate.type.value}:{candidate.natural_key}")
                continue
            seen.add(key)
            unique.append(candidate)

        logger.info(f"Total candidates for patient {snapshot.patient_id}: {len(unique)}")
        return DetectionOutcome(candidates=unique, faults=faults)

    def _run_sequential(
        self,
        snapshot: PatientSnapshot,
        proposed_medication: Optional[Medication]
    ) -> Tuple[Dict[str, List[AlertCandidate]], List[DetectorFault]]:
        results: Dict[str, List[AlertCandidate]] = {}
        faults: List[DetectorFault] = []

        for detector in self.detectors:
            try:
                results[detector.detector_id] = detector.evaluate(snapshot, proposed_medication)
            except Exception as e:
                logger.error(f"Error evaluating detector {detector.detector_id}: {e}", exc_info=True)
                faults.append(DetectorFault(
                    detector=detector.detector_id, error=str(e), alert_type=detector.alert_type
                ))

        return results, faults

    def _run_parallel(
        self,
        snapshot: PatientSnapshot,
        proposed_medication: Optional[Medication]
    ) -> Tuple[Dict[str, List[AlertCandidate]], List[DetectorFault]]:
        results: Dict[str, List[AlertCandidate]] = {}
        faults: List[DetectorFault] = []

        # One worker per detector so every detector gets the full timeout
        executor = ThreadPoolExecutor(
            max_workers=len(self.detectors),
            thread_name_prefix="alert-detector"
        )
        try:
            futures = {
                detector.detector_id: executor.submit(detector.evaluate, snapshot, proposed_medication)
                for detector in self.detectors
            }
            wait(list(futures.values()), timeout=self.timeout_seconds)

            for detector in self.detectors:
                future = futures[detector.detector_id]
                if not future.done():
                    future.cancel()
                    logger.error(
                        f"Detector {detector.detector_id} timed out after {self.timeout_seconds}s"
                    )
                    faults.append(DetectorFault(
                        detector=detector.detector_id,
                        error=f"timed out after {self.timeout_seconds}s",
                        alert_type=detector.alert_type,
                        timed_out=True
                    ))
                    continue
                try:
                    results[detector.detector_id] = future.result()
                except Exception as e:
                    logger.error(f"Error evaluating detector {detector.detector_id}: {e}", exc_info=True)
                    faults.append(DetectorFault(
                        detector=detector.detector_id, error=str(e), alert_type=detector.alert_type
                    ))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return results, faults

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def reconcile(
        self,
        patient_id: str,
        candidates: List[AlertCandidate],
        previous: Optional[List[Alert]] = None,
        faulted_types: Optional[Iterable[AlertType]] = None
    ) -> ReconciliationOutcome:
        """
        Merge this scan's candidates with the patient's previous alert set

        Args:
            patient_id: Patient the candidates belong to
            candidates: Severity-sorted candidates from detect()
            previous: Alerts stored after the previous scan
            faulted_types: Alert types whose detector failed this scan; their
                prior alerts are carried forward unchanged instead of retired

        Returns:
            Reconciled alerts (produced conditions plus retained
            acknowledged/dismissed history) and the ids retired by this scan
        """
        now = self.clock()
        faulted: Set[AlertType] = set(faulted_types or [])
        previous_by_id: Dict[str, Alert] = {a.id: a for a in previous or []}
        reconciled: List[Alert] = []

        for candidate in candidates:
            alert_id = derive_alert_id(patient_id, candidate.type, candidate.natural_key)
            prior = previous_by_id.pop(alert_id, None)

            if prior is None:
                reconciled.append(Alert(
                    id=alert_id,
                    patient_id=patient_id,
                    type=candidate.type,
                    severity=candidate.severity,
                    natural_key=candidate.natural_key,
                    title=candidate.title,
                    message=candidate.message,
                    action_required=candidate.action_required,
                    related_data=candidate.related_data,
                    created_at=now,
                    updated_at=now,
                ))
                continue

            reconciled.append(self._refresh(prior, candidate, now))

        retired: List[str] = []
        for prior in previous_by_id.values():
            if prior.state in (AlertState.ACKNOWLEDGED, AlertState.DISMISSED):
                reconciled.append(prior)
            elif prior.type in faulted:
                logger.warning(
                    f"Keeping alert {prior.id} ({prior.type.value}): detector failed, "
                    f"condition not re-evaluated"
                )
                reconciled.append(prior)
            else:
                logger.info(f"Retiring alert {prior.id} ({prior.type.value}): condition no longer present")
                retired.append(prior.id)

        reconciled.sort(key=lambda a: severity_rank(a.severity))
        return ReconciliationOutcome(alerts=reconciled, retired_alert_ids=retired)

    def _refresh(self, prior: Alert, candidate: AlertCandidate, now: datetime) -> Alert:
        """Carry identity and lifecycle state over to a reproduced condition"""
        changed = (
            prior.severity != candidate.severity
            or prior.title != candidate.title
            or prior.message != candidate.message
            or prior.related_data != candidate.related_data
        )
        update = {
            "severity": candidate.severity,
            "title": candidate.title,
            "message": candidate.message,
            "action_required": candidate.action_required,
            "related_data": candidate.related_data,
            "updated_at": now if changed else prior.updated_at,
        }

        # Escalation is measured against the severity the clinician reviewed
        reviewed = prior.reviewed_severity or prior.severity
        escalated = severity_rank(candidate.severity) < severity_rank(reviewed)
        if prior.state != AlertState.UNACKNOWLEDGED and escalated:
            logger.warning(
                f"Re-opening {prior.state.value} alert {prior.id}: severity escalated "
                f"{AlertSeverity(reviewed).value} -> {candidate.severity.value}"
            )
            update.update({
                "state": AlertState.UNACKNOWLEDGED,
                "acknowledged": False,
                "acknowledged_at": None,
                "acknowledged_by": None,
                "dismissed_at": None,
                "dismissed_by": None,
                "reviewed_severity": None,
            })

        return Alert.model_validate({**prior.model_dump(), **update})

    # =========================================================================
    # Scan
    # =========================================================================

    def scan(
        self,
        snapshot: PatientSnapshot,
        previous: Optional[List[Alert]] = None,
        proposed_medication: Optional[Medication] = None
    ) -> Tuple[ReconciliationOutcome, List[DetectorFault]]:
        """Detect and reconcile in one step"""
        detection = self.detect(snapshot, proposed_medication)
        faulted_types = {f.alert_type for f in detection.faults if f.alert_type is not None}
        outcome = self.reconcile(
            snapshot.patient_id, detection.candidates, previous, faulted_types=faulted_types
        )
        return outcome, detection.faults
