# audit.py - bounded trail of webhook, email and download events
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from models import AuditEvent, EventType, utcnow
from storage import DeliveryStore

log = logging.getLogger("audit")

DEFAULT_RETENTION = 500


class AuditLog:
    def __init__(
        self,
        store: DeliveryStore,
        retention: int = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.retention = retention
        self.clock = clock

    def record(self, kind: EventType, message: str, order_id: Optional[int] = None) -> Optional[AuditEvent]:
        """Append an event. Failures are logged, never raised to the caller."""
        event = AuditEvent(type=kind, order_id=order_id, message=message, created_at=self.clock())
        try:
            stored = self.store.append_event(event, self.retention)
        except Exception:
            log.exception("Could not record audit event %s for order %s", kind.value, order_id)
            return None
        log.info("[%s] order=%s %s", kind.value, order_id if order_id is not None else "-", message)
        return stored

    def recent(self) -> List[AuditEvent]:
        """Newest first."""
        return list(reversed(self.store.list_events()))

    def orders_with_activity(self) -> List[Dict]:
        latest: Dict[int, datetime] = {}
        for event in self.store.list_events():
            if event.order_id is None:
                continue
            seen = latest.get(event.order_id)
            if seen is None or event.created_at > seen:
                latest[event.order_id] = event.created_at
        rows = [{"order_id": oid, "last_event_at": at} for oid, at in latest.items()]
        rows.sort(key=lambda r: r["last_event_at"], reverse=True)
        return rows
