"""
ClinicalSentry Alert Queries
Read-only projections over a patient's alert set for the alert center
"""

from typing import Iterable, List, Optional, Set

from alert_engine.schemas import (
    Alert, AlertCounts, AlertSeverity, AlertState, AlertType, severity_rank
)


class AlertQueryService:
    """Counts, filters and selection helpers; never mutates alerts"""

    def __init__(self, alerts: Iterable[Alert]):
        self.alerts: List[Alert] = sorted(alerts, key=lambda a: severity_rank(a.severity))

    def unacknowledged(self) -> List[Alert]:
        return [a for a in self.alerts if a.state == AlertState.UNACKNOWLEDGED]

    def acknowledged(self) -> List[Alert]:
        return [a for a in self.alerts if a.state == AlertState.ACKNOWLEDGED]

    def counts_by_severity(self) -> AlertCounts:
        """Unacknowledged alerts per severity; the four buckets sum to total"""
        counts = {severity: 0 for severity in AlertSeverity}
        for alert in self.unacknowledged():
            counts[alert.severity] += 1

        return AlertCounts(
            critical=counts[AlertSeverity.CRITICAL],
            high=counts[AlertSeverity.HIGH],
            medium=counts[AlertSeverity.MEDIUM],
            low=counts[AlertSeverity.LOW],
            total=sum(counts.values()),
        )

    def filter(
        self,
        text: Optional[str] = None,
        severity: Optional[AlertSeverity] = None,
        type: Optional[AlertType] = None
    ) -> List[Alert]:
        """
        Alerts matching every given criterion

        Args:
            text: Case-insensitive match against title, message and type
            severity: Exact severity
            type: Exact alert type
        """
        needle = text.strip().lower() if text else ""
        matched = []

        for alert in self.alerts:
            if severity is not None and alert.severity != AlertSeverity(severity):
                continue
            if type is not None and alert.type != AlertType(type):
                continue
            if needle and not any(
                needle in field.lower()
                for field in (alert.title, alert.message, alert.type.value)
            ):
                continue
            matched.append(alert)

        return matched

    # Selection helpers for bulk acknowledgment

    def select_all_unacknowledged(self, selection: Set[str]) -> Set[str]:
        """Select every unacknowledged alert, or clear when all are selected"""
        all_ids = {a.id for a in self.unacknowledged()}
        if all_ids and selection >= all_ids:
            return set()
        return all_ids

    def toggle_selection(self, selection: Set[str], alert_id: str) -> Set[str]:
        updated = set(selection)
        if alert_id in updated:
            updated.remove(alert_id)
        else:
            updated.add(alert_id)
        return updated
