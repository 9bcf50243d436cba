"""
Supervisor alerts
Durable notices raised when a clock event fails verification or syncs late.
Alerts are only ever changed by an explicit acknowledgement and removed by an
explicit dismissal; neither touches the linked time entry.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from geofence import GPS_DENIED, LATE_SYNC, OUT_OF_RADIUS, POOR_ACCURACY
from kv_store import SUPERVISOR_ALERTS, Store, Write
from models import SupervisorAlert, TimeEntry, VerificationResult, utcnow

logger = logging.getLogger(__name__)

DEFAULT_LATE_SYNC_THRESHOLD = timedelta(minutes=15)


class AlertNotFoundError(Exception):
    def __init__(self, alert_id: str):
        self.alert_id = alert_id
        super().__init__(f"Alert {alert_id} not found")


def alert_id_for(entry_id: str, alert_type: str) -> str:
    # One alert per (entry, type): observing the same fix again maps onto the same record
    return f"alert-{entry_id}-{alert_type}"


class AlertGenerator:
    def __init__(self, late_sync_threshold: timedelta = DEFAULT_LATE_SYNC_THRESHOLD):
        self.late_sync_threshold = late_sync_threshold

    def _alert(self, alert_type: str, entry: TimeEntry, detail: Optional[str]) -> SupervisorAlert:
        return SupervisorAlert(
            id=alert_id_for(entry.id, alert_type),
            type=alert_type,
            worker_id=entry.worker_id,
            worker_name=entry.worker_name,
            site_id=entry.site_id,
            site_name=entry.site_name,
            distance=entry.distance,
            accuracy=entry.accuracy,
            detail=detail,
            entry_id=entry.id,
        )

    def on_verification_result(self, result: VerificationResult, entry: TimeEntry) -> List[SupervisorAlert]:
        """One alert per verification concern; nothing for a clean accept"""
        if result.reason is None:
            return []
        alerts = []
        for reason in result.reasons:
            if reason not in (GPS_DENIED, POOR_ACCURACY, OUT_OF_RADIUS):
                continue
            alerts.append(self._alert(reason, entry, result.detail))
        return alerts

    def on_replay(self, entry: TimeEntry, captured_at: datetime, synced_at: datetime) -> Optional[SupervisorAlert]:
        delay = synced_at - captured_at
        if delay <= self.late_sync_threshold:
            return None
        minutes = int(delay.total_seconds() // 60)
        return self._alert(LATE_SYNC, entry, f"Clock event synced {minutes} min after capture")


class AlertInbox:
    """Supervisor-facing view of the alert feed"""

    def __init__(self, store: Store):
        self.store = store

    async def list(self, unacknowledged_only: bool = False, alert_type: Optional[str] = None) -> List[SupervisorAlert]:
        docs = await self.store.all(SUPERVISOR_ALERTS)
        alerts = [SupervisorAlert(**doc) for doc in docs.values()]
        if unacknowledged_only:
            alerts = [a for a in alerts if not a.acknowledged]
        if alert_type:
            alerts = [a for a in alerts if a.type == alert_type]
        alerts.sort(key=lambda a: a.timestamp, reverse=True)
        return alerts

    async def unread_count(self) -> int:
        return len(await self.list(unacknowledged_only=True))

    async def acknowledge(self, alert_id: str, supervisor_id: str) -> SupervisorAlert:
        doc = await self.store.get(SUPERVISOR_ALERTS, alert_id)
        if doc is None:
            raise AlertNotFoundError(alert_id)
        alert = SupervisorAlert(**doc)
        if alert.acknowledged:
            return alert

        alert.acknowledged = True
        alert.acknowledged_at = utcnow()
        alert.acknowledged_by = supervisor_id
        await self.store.commit([Write(SUPERVISOR_ALERTS, alert.id, alert.model_dump(mode="json"))])
        logger.info(f"Alert {alert_id} acknowledged by {supervisor_id}")
        return alert

    async def dismiss(self, alert_id: str) -> None:
        if await self.store.get(SUPERVISOR_ALERTS, alert_id) is None:
            raise AlertNotFoundError(alert_id)
        await self.store.commit([Write(SUPERVISOR_ALERTS, alert_id, None)])
        logger.info(f"Alert {alert_id} dismissed")

    def subscribe(self, listener: Callable[[List[SupervisorAlert]], None]) -> Callable[[], None]:
        def on_change(snapshot):
            alerts = [SupervisorAlert(**doc) for doc in snapshot.values()]
            alerts.sort(key=lambda a: a.timestamp, reverse=True)
            listener(alerts)

        return self.store.subscribe(SUPERVISOR_ALERTS, on_change)
