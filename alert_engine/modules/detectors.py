"""
ClinicalSentry Alert Detectors
Pure rule evaluators mapping a patient snapshot to alert candidates
"""

import logging
import re
from typing import Callable, Dict, List, Optional, Tuple
from datetime import datetime

from dateutil import parser as date_parser

from alert_engine.exceptions import MalformedObservation
from alert_engine.modules.knowledge_base import (
    AnalyteThreshold, ClinicalKnowledgeBase, default_knowledge_base
)
from alert_engine.modules.normalization import parse_numeric, parse_timestamp
from alert_engine.schemas import (
    AlertCandidate, AlertSeverity, AlertType, Appointment, LabObservation,
    Medication, PatientSnapshot, utcnow
)

logger = logging.getLogger(__name__)

_BLOOD_PRESSURE = re.compile(r"(\d+)\s*/\s*(\d+)")


# =============================================================================
# Detector Base Class
# =============================================================================

class AlertDetector:
    """Base class for alert detectors"""

    def __init__(
        self,
        detector_id: str,
        name: str,
        alert_type: AlertType,
        knowledge_base: Optional[ClinicalKnowledgeBase] = None
    ):
        self.detector_id = detector_id
        self.name = name
        self.alert_type = alert_type
        self.knowledge_base = knowledge_base or default_knowledge_base()

    def evaluate(
        self,
        snapshot: PatientSnapshot,
        proposed_medication: Optional[Medication] = None
    ) -> List[AlertCandidate]:
        """
        Evaluate detector against a patient snapshot

        Args:
            snapshot: Normalized patient snapshot
            proposed_medication: Medication about to be prescribed, if any

        Returns:
            Alert candidates for every condition the detector finds
        """
        raise NotImplementedError("Subclasses must implement evaluate()")

    def _create_candidate(
        self,
        severity: AlertSeverity,
        natural_key: str,
        title: str,
        message: str,
        related_data: Optional[Dict] = None,
        action_required: bool = True
    ) -> AlertCandidate:
        """Helper method to create an alert candidate"""
        return AlertCandidate(
            type=self.alert_type,
            severity=severity,
            natural_key=natural_key,
            title=title,
            message=message,
            action_required=action_required,
            related_data=related_data or {},
        )


def medication_names(
    snapshot: PatientSnapshot,
    proposed_medication: Optional[Medication] = None
) -> List[str]:
    """Active medication names plus the proposed one, without duplicates"""
    names = []
    seen = set()
    candidates = list(snapshot.active_medications)
    if proposed_medication is not None:
        candidates.append(proposed_medication)
    for med in candidates:
        key = med.name.strip().lower()
        if key and key not in seen:
            seen.add(key)
            names.append(med.name.strip())
    return names


# =============================================================================
# Medication Safety Detectors
# =============================================================================

class DrugInteractionDetector(AlertDetector):
    """
    Detector: known dangerous medication class pairs
    Each interaction rule fires at most once, regardless of how many drugs
    of either class are on the list.
    """

    def __init__(self, knowledge_base: Optional[ClinicalKnowledgeBase] = None):
        super().__init__(
            detector_id="DRUG_INTERACTION",
            name="Drug Interaction",
            alert_type=AlertType.DRUG_INTERACTION,
            knowledge_base=knowledge_base
        )

    def evaluate(self, snapshot: PatientSnapshot, proposed_medication: Optional[Medication] = None) -> List[AlertCandidate]:
        alerts = []
        names = medication_names(snapshot, proposed_medication)

        if len(names) < 2:
            return alerts

        matcher = self.knowledge_base.matcher
        for rule in self.knowledge_base.interactions:
            class_a = [n for n in names if matcher.matches_any(n, rule.class_a_terms)]
            class_b = [n for n in names if matcher.matches_any(n, rule.class_b_terms)]

            # A single combination product matching both classes is not a pair
            if not any(a != b for a in class_a for b in class_b):
                continue

            involved = sorted({n.lower() for n in class_a + class_b})
            alerts.append(self._create_candidate(
                severity=rule.severity,
                natural_key=rule.natural_key,
                title=rule.title,
                message=rule.message,
                related_data={
                    "rule_id": rule.rule_id,
                    "classes": sorted([rule.class_a, rule.class_b]),
                    "medications": involved,
                }
            ))

        return alerts


class AllergyDetector(AlertDetector):
    """
    Detector: medications that conflict with documented allergies
    Direct substring matches are critical; cross-reactive classes are high.
    """

    def __init__(self, knowledge_base: Optional[ClinicalKnowledgeBase] = None):
        super().__init__(
            detector_id="ALLERGY",
            name="Allergy Conflict",
            alert_type=AlertType.ALLERGY,
            knowledge_base=knowledge_base
        )

    def evaluate(self, snapshot: PatientSnapshot, proposed_medication: Optional[Medication] = None) -> List[AlertCandidate]:
        alerts = []
        allergies = snapshot.allergies

        if not allergies:
            return alerts

        matcher = self.knowledge_base.matcher
        for med in medication_names(snapshot, proposed_medication):
            direct = [a for a in allergies if matcher.matches(med, a)]
            if direct:
                alerts.append(self._create_candidate(
                    severity=AlertSeverity.CRITICAL,
                    natural_key=f"allergy:{med.lower()}",
                    title="CRITICAL: Patient Allergy",
                    message=f"Patient is allergic to {med} (documented allergy: {', '.join(direct)})",
                    related_data={"medication": med, "allergies": direct}
                ))

            for rule in self.knowledge_base.cross_reactivity:
                allergic = [
                    a for a in allergies
                    if any(matcher.matches(a, term) for term in rule.allergen_terms)
                ]
                if allergic and matcher.matches_any(med, rule.drug_terms):
                    alerts.append(self._create_candidate(
                        severity=rule.severity,
                        natural_key=f"cross-reactivity:{rule.allergen_class}:{med.lower()}",
                        title=rule.title,
                        message=f"{rule.message} ({med})",
                        related_data={
                            "medication": med,
                            "allergies": allergic,
                            "allergen_class": rule.allergen_class,
                            "drug_class": rule.drug_class,
                        }
                    ))

        return alerts


# =============================================================================
# Critical Value Detectors
# =============================================================================

class CriticalLabDetector(AlertDetector):
    """
    Detector: lab values outside the analyte's outer or panic band
    The latest parsable observation of each analyte decides.
    """

    def __init__(self, knowledge_base: Optional[ClinicalKnowledgeBase] = None):
        super().__init__(
            detector_id="CRITICAL_LAB",
            name="Critical Lab Value",
            alert_type=AlertType.CRITICAL_LAB,
            knowledge_base=knowledge_base
        )

    def evaluate(self, snapshot: PatientSnapshot, proposed_medication: Optional[Medication] = None) -> List[AlertCandidate]:
        alerts = []
        latest: Dict[str, Tuple[AnalyteThreshold, LabObservation, float]] = {}

        for observation in snapshot.lab_observations:
            analyte = self.knowledge_base.find_analyte(observation.test_name)
            if analyte is None:
                continue

            try:
                value = parse_numeric(observation.value, observation.test_name)
            except MalformedObservation as e:
                logger.debug(f"Skipping lab observation for patient {snapshot.patient_id}: {e}")
                continue

            current = latest.get(analyte.analyte)
            if current is None or _is_newer(observation, current[1]):
                latest[analyte.analyte] = (analyte, observation, value)

        for analyte in self.knowledge_base.analytes:
            if analyte.analyte not in latest:
                continue
            _, observation, value = latest[analyte.analyte]

            severity = analyte.classify(value)
            if severity is None:
                continue

            unit = observation.unit or analyte.unit
            label = "CRITICAL" if severity == AlertSeverity.CRITICAL else "Abnormal"
            alerts.append(self._create_candidate(
                severity=severity,
                natural_key=f"lab:{analyte.analyte}",
                title=f"Critical Lab Value: {observation.test_name}",
                message=(
                    f"{observation.test_name}: {observation.value} {unit} - {label} "
                    f"({analyte.direction(value)}, reference {analyte.describe_range()} {analyte.unit})"
                ),
                related_data={
                    "analyte": analyte.analyte,
                    "value": value,
                    "lab": observation.model_dump(mode="json"),
                }
            ))

        return alerts


def _is_newer(candidate: LabObservation, current: LabObservation) -> bool:
    """Timestamped observations win; otherwise later list entries win"""
    if candidate.observed_at is None:
        return current.observed_at is None
    if current.observed_at is None:
        return True
    return candidate.observed_at >= current.observed_at


class CriticalVitalDetector(AlertDetector):
    """
    Detector: blood pressure crises and out-of-band vital signs
    Malformed readings are skipped.
    """

    def __init__(self, knowledge_base: Optional[ClinicalKnowledgeBase] = None):
        super().__init__(
            detector_id="CRITICAL_VITAL",
            name="Critical Vital Sign",
            alert_type=AlertType.CRITICAL_VITAL,
            knowledge_base=knowledge_base
        )

    def evaluate(self, snapshot: PatientSnapshot, proposed_medication: Optional[Medication] = None) -> List[AlertCandidate]:
        alerts = []
        vitals = snapshot.vitals

        bp_alert = self._check_blood_pressure(vitals.blood_pressure)
        if bp_alert is not None:
            alerts.append(bp_alert)

        for kind, raw in (
            ("heart-rate", vitals.heart_rate),
            ("temperature", vitals.temperature),
            ("oxygen", vitals.oxygen),
        ):
            threshold = self.knowledge_base.get_vital(kind)
            if threshold is None or raw is None:
                continue

            try:
                value = parse_numeric(raw, kind)
            except MalformedObservation as e:
                logger.debug(f"Skipping vital sign for patient {snapshot.patient_id}: {e}")
                continue

            severity = threshold.classify(value)
            if severity is None:
                continue

            label = "CRITICAL" if severity == AlertSeverity.CRITICAL else "Abnormal"
            alerts.append(self._create_candidate(
                severity=severity,
                natural_key=f"vital:{kind}",
                title=f"Critical Vital Sign: {threshold.display_name}",
                message=(
                    f"{threshold.display_name}: {raw} {threshold.unit} - {label} "
                    f"({threshold.direction(value)})"
                ),
                related_data={"vital": kind, "value": value}
            ))

        return alerts

    def _check_blood_pressure(self, blood_pressure: Optional[str]) -> Optional[AlertCandidate]:
        if not blood_pressure:
            return None

        match = _BLOOD_PRESSURE.search(blood_pressure)
        if not match:
            logger.debug(f"Skipping malformed blood pressure {blood_pressure!r}")
            return None

        systolic, diastolic = int(match.group(1)), int(match.group(2))
        limits = self.knowledge_base.blood_pressure

        crisis = systolic > limits.systolic_max or diastolic > limits.diastolic_max
        hypotension = systolic < limits.systolic_min
        if not (crisis or hypotension or diastolic < limits.diastolic_min):
            return None

        if crisis:
            label = "Hypertensive Crisis"
        elif hypotension:
            label = "Hypotension"
        else:
            label = "Abnormal"

        reading = blood_pressure.strip()
        return self._create_candidate(
            severity=AlertSeverity.CRITICAL if (crisis or hypotension) else AlertSeverity.HIGH,
            natural_key="vital:blood-pressure",
            title=f"Critical Blood Pressure: {reading}",
            message=f"BP: {reading} - {label}",
            related_data={"vital": "blood-pressure", "systolic": systolic, "diastolic": diastolic}
        )


# =============================================================================
# Follow-Up Detector
# =============================================================================

class FollowUpDetector(AlertDetector):
    """
    Detector: scheduled appointments whose date has passed
    Emits a single aggregate alert per patient so a backlog of missed visits
    does not flood the alert list.
    """

    def __init__(
        self,
        knowledge_base: Optional[ClinicalKnowledgeBase] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        super().__init__(
            detector_id="OVERDUE_FOLLOWUP",
            name="Overdue Follow-Up",
            alert_type=AlertType.OVERDUE_FOLLOWUP,
            knowledge_base=knowledge_base
        )
        self.clock = clock or utcnow

    def evaluate(self, snapshot: PatientSnapshot, proposed_medication: Optional[Medication] = None) -> List[AlertCandidate]:
        alerts = []
        now = self.clock()

        overdue = [apt for apt in snapshot.appointments if self._is_overdue(apt, now)]

        if overdue:
            alerts.append(self._create_candidate(
                severity=AlertSeverity.MEDIUM,
                natural_key="followup:overdue",
                title="Overdue Follow-up",
                message=f"{len(overdue)} overdue appointment(s)",
                related_data={
                    "count": len(overdue),
                    "appointments": [apt.model_dump(mode="json") for apt in overdue],
                }
            ))

        return alerts

    def _is_overdue(self, appointment: Appointment, now: datetime) -> bool:
        if appointment.status.strip().lower() != "scheduled" or not appointment.date:
            return False

        date_text = appointment.date.strip()
        if appointment.time:
            date_text = f"{date_text} {appointment.time.strip()}"

        # Date-only appointments are overdue from the following day
        if ":" not in date_text:
            try:
                return date_parser.parse(date_text).date() < now.date()
            except (ValueError, OverflowError):
                logger.debug(f"Skipping appointment {appointment.id} with unparsable date {date_text!r}")
                return False

        scheduled = parse_timestamp(date_text)
        if scheduled is None:
            logger.debug(f"Skipping appointment {appointment.id} with unparsable date {date_text!r}")
            return False
        return scheduled < now
