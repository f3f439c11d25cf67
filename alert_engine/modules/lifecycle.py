"""
ClinicalSentry Alert Lifecycle
Acknowledge and dismiss transitions, serialized per patient through the store
"""

import logging
from typing import Callable, Iterable, Optional, Tuple
from datetime import datetime

from alert_engine.exceptions import AlertNotFoundError, InvalidAlertOperation
from alert_engine.schemas import (
    Alert, AlertSeverity, AlertState, BulkAcknowledgeResult, utcnow
)
from alert_engine.services.alert_store import AlertStore

logger = logging.getLogger(__name__)


class AlertLifecycleManager:
    """
    Applies lifecycle transitions to stored alerts

    Unacknowledged -> Acknowledged (any severity)
    Unacknowledged -> Dismissed (non-critical only)
    """

    def __init__(self, store: AlertStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or utcnow

    def _locate(self, alert_id: str) -> str:
        patient_id = self.store.find_patient_id(alert_id)
        if patient_id is None:
            logger.warning(f"Alert {alert_id} not found")
            raise AlertNotFoundError(alert_id)
        return patient_id

    def _load(self, alert_id: str) -> Alert:
        alert = self.store.get_alert(alert_id)
        if alert is None:
            # Retired between lookup and lock
            logger.warning(f"Alert {alert_id} not found")
            raise AlertNotFoundError(alert_id)
        return alert

    # =========================================================================
    # Acknowledge
    # =========================================================================

    def acknowledge(self, alert_id: str, actor_id: str) -> Alert:
        """
        Mark an alert as reviewed by a clinician

        Acknowledging twice is a no-op: the first actor and timestamp stay.

        Raises:
            AlertNotFoundError: no alert with this id
            InvalidAlertOperation: missing actor or alert already dismissed
        """
        alert, _ = self._acknowledge(alert_id, actor_id)
        return alert

    def _acknowledge(self, alert_id: str, actor_id: str) -> Tuple[Alert, bool]:
        if not actor_id or not actor_id.strip():
            raise InvalidAlertOperation(alert_id, "Acknowledgment requires an actor id")

        patient_id = self._locate(alert_id)
        with self.store.patient_lock(patient_id):
            alert = self._load(alert_id)

            if alert.state == AlertState.ACKNOWLEDGED:
                logger.debug(f"Alert {alert_id} already acknowledged by {alert.acknowledged_by}")
                return alert, False
            if alert.state == AlertState.DISMISSED:
                raise InvalidAlertOperation(alert_id, f"Alert {alert_id} has been dismissed")

            now = self.clock()
            updated = Alert.model_validate({
                **alert.model_dump(),
                "state": AlertState.ACKNOWLEDGED,
                "acknowledged": True,
                "acknowledged_at": now,
                "acknowledged_by": actor_id.strip(),
                "reviewed_severity": alert.severity,
                "updated_at": now,
            })
            self.store.save_alert(updated)

        logger.info(f"Alert {alert_id} ({alert.severity.value}) acknowledged by {actor_id}")
        return updated, True

    def bulk_acknowledge(self, alert_ids: Iterable[str], actor_id: str) -> BulkAcknowledgeResult:
        """Acknowledge each id; failures are collected instead of aborting the batch"""
        result = BulkAcknowledgeResult()

        for alert_id in dict.fromkeys(alert_ids):
            try:
                _, changed = self._acknowledge(alert_id, actor_id)
            except AlertNotFoundError:
                result.failed[alert_id] = "not found"
                continue
            except InvalidAlertOperation as e:
                result.failed[alert_id] = e.reason
                continue

            if changed:
                result.acknowledged.append(alert_id)
            else:
                result.already_acknowledged.append(alert_id)

        logger.info(
            f"Bulk acknowledge by {actor_id}: {len(result.acknowledged)} acknowledged, "
            f"{len(result.already_acknowledged)} unchanged, {len(result.failed)} failed"
        )
        return result

    # =========================================================================
    # Dismiss
    # =========================================================================

    def dismiss(self, alert_id: str, actor_id: Optional[str] = None) -> Alert:
        """
        Dismiss a non-critical alert

        Raises:
            AlertNotFoundError: no alert with this id
            InvalidAlertOperation: alert is critical or already acknowledged
        """
        patient_id = self._locate(alert_id)
        with self.store.patient_lock(patient_id):
            alert = self._load(alert_id)

            if alert.state == AlertState.DISMISSED:
                return alert
            if alert.severity == AlertSeverity.CRITICAL:
                raise InvalidAlertOperation(
                    alert_id, "Critical alerts cannot be dismissed; acknowledge instead"
                )
            if alert.state == AlertState.ACKNOWLEDGED:
                raise InvalidAlertOperation(alert_id, f"Alert {alert_id} is already acknowledged")

            now = self.clock()
            updated = Alert.model_validate({
                **alert.model_dump(),
                "state": AlertState.DISMISSED,
                "dismissed_at": now,
                "dismissed_by": actor_id,
                "reviewed_severity": alert.severity,
                "updated_at": now,
            })
            self.store.save_alert(updated)

        logger.info(f"Alert {alert_id} ({alert.severity.value}) dismissed by {actor_id or 'unknown'}")
        return updated
