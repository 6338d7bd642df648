# models.py - records owned by the order store, token ledger and audit log
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventType(str, Enum):
    WEBHOOK_INVALID = "webhook_invalid"
    WEBHOOK_SKIPPED = "webhook_skipped"
    EMAIL_SENT = "email_sent"
    EMAIL_FAILED = "email_failed"
    DOWNLOAD_FAILED = "download_failed"
    DOWNLOAD_SUCCESS = "download_success"
    REGEN_FAILED = "regen_failed"


@dataclass(frozen=True)
class Order:
    id: int
    customer_id: Optional[int]
    email: str
    created_at: datetime


@dataclass(frozen=True)
class DownloadToken:
    token: str
    order_id: int
    product_id: int
    file_name: str
    expires_at: datetime
    used_at: Optional[datetime]
    created_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_usable(self, now: datetime, single_use: bool = True) -> bool:
        """Unexpired, and either unused or the single-use policy is off."""
        if self.is_expired(now):
            return False
        return self.used_at is None or not single_use


@dataclass(frozen=True)
class AuditEvent:
    type: EventType
    order_id: Optional[int]
    message: str
    created_at: datetime
    id: Optional[int] = None
