"""
Operator actions on persisted alerts.
"""

from datetime import datetime
from typing import Callable, List, Optional

import structlog

from ..errors import AlertNotFound
from ..storage.models import Alert, AlertSeverity, AlertType
from ..storage.repository import AlertRepository

logger = structlog.get_logger()


class AlertService:
    """List, acknowledge, resolve and delete alerts."""

    def __init__(
        self,
        alerts: AlertRepository,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.alerts = alerts
        self.clock = clock

    def list_alerts(
        self,
        is_read: Optional[bool] = None,
        is_resolved: Optional[bool] = None,
        alert_type: Optional[AlertType] = None,
        severity: Optional[AlertSeverity] = None,
        limit: int = 100,
    ) -> List[Alert]:
        return self.alerts.list(
            is_read=is_read,
            is_resolved=is_resolved,
            alert_type=alert_type,
            severity=severity,
            limit=limit,
        )

    def get_alert(self, alert_id: int) -> Alert:
        alert = self.alerts.get(alert_id)
        if alert is None:
            raise AlertNotFound(alert_id)
        return alert

    def mark_read(self, alert_id: int) -> Alert:
        if not self.alerts.mark_read(alert_id):
            raise AlertNotFound(alert_id)
        return self.get_alert(alert_id)

    def resolve(
        self,
        alert_id: int,
        resolved_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Alert:
        """Resolve an alert; a resolved alert no longer suppresses new ones.

        Raises:
            AlertNotFound: If no alert has this id
        """
        if not self.alerts.resolve(alert_id, now or self.clock(), resolved_by):
            raise AlertNotFound(alert_id)
        logger.info("alert_resolved", alert_id=alert_id, resolved_by=resolved_by)
        return self.get_alert(alert_id)

    def delete(self, alert_id: int) -> None:
        if not self.alerts.delete(alert_id):
            raise AlertNotFound(alert_id)
        logger.info("alert_deleted", alert_id=alert_id)
