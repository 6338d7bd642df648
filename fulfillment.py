# fulfillment.py - paid-order webhook, download redemption and link regeneration
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from audit import AuditLog
from email_sender import build_link_email
from errors import (
    AuthenticationFailure,
    Denied,
    DenialReason,
    DependencyFailure,
    NotFound,
    ValidationFailure,
)
from models import DownloadToken, EventType, Order, utcnow
from orders import OrderStore
from products_config import ProductCatalog
from settings import Settings
from signatures import ParamValue, verify_proxy_request, verify_webhook
from storage import DeliveryStore
from token_links import TokenLedger, make_download_link

log = logging.getLogger("fulfillment")

# to, subject, html, text; raises on failure
Mailer = Callable[[str, str, str, str], None]


# --- Webhook payload ---

def _loose_int(value):
    """Numeric ids pass through; anything else (gid strings, custom items) is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        value = value.strip()
        if value.isascii() and value.isdigit():
            return int(value)
    return None


class LineItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    product_id: Optional[int] = None
    title: Optional[str] = None

    @field_validator("product_id", mode="before")
    @classmethod
    def unmappable_product_id(cls, value):
        return _loose_int(value)


class Customer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None

    @field_validator("id", mode="before")
    @classmethod
    def unmappable_customer_id(cls, value):
        return _loose_int(value)


class OrderPaidPayload(BaseModel):
    """The subset of an orders/paid webhook body this service reads."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    email: Optional[str] = None
    customer: Optional[Customer] = None
    line_items: Optional[List[LineItem]] = None


@dataclass(frozen=True)
class ParsedWebhookPayload:
    order_id: int
    customer_id: Optional[int]
    email: str
    line_items: List[LineItem]


def parse_webhook_payload(raw_body: bytes) -> Union[ParsedWebhookPayload, ValidationFailure]:
    try:
        payload = OrderPaidPayload.model_validate_json(raw_body)
    except ValidationError as e:
        log.warning("Undecodable webhook payload: %s", e.errors()[:1])
        return ValidationFailure("Invalid payload")

    email = (payload.email or "").strip()
    if not payload.id or not email:
        return ValidationFailure("No order email", order_id=payload.id or None)

    return ParsedWebhookPayload(
        order_id=payload.id,
        customer_id=payload.customer.id if payload.customer else None,
        email=email,
        line_items=payload.line_items or [],
    )


# --- Results ---

@dataclass(frozen=True)
class DeliverableItem:
    product_id: int
    title: str
    file_name: str


@dataclass
class WebhookResult:
    accepted: bool
    note: str
    order_id: Optional[int] = None
    links: List[dict] = field(default_factory=list)
    email_sent: bool = False


@dataclass(frozen=True)
class Deliverable:
    path: Path
    filename: str
    token: DownloadToken


@dataclass
class RegeneratedLinks:
    order: Order
    links: List[dict]


def _positive_int(value: Optional[ParamValue]) -> Optional[int]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    # ASCII only; str.isdigit() also accepts superscripts that int() rejects
    if not (value.isascii() and value.isdigit()):
        return None
    number = int(value)
    return number if number > 0 else None


class FulfillmentService:
    """Coordinates the order store, token ledger, audit log, catalog and mailer.

    Holds no state of its own. Every branch either returns a result or raises
    a DeliveryError after recording what happened; storage faults propagate.
    """

    def __init__(
        self,
        settings: Settings,
        store: DeliveryStore,
        catalog: ProductCatalog,
        mailer: Mailer,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.catalog = catalog
        self.mailer = mailer
        self.clock = clock
        self.orders = OrderStore(store)
        self.ledger = TokenLedger(store, settings.expire_after_download, clock)
        self.audit = AuditLog(store, settings.audit_retention, clock)

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.expiry_minutes)

    # --- orders/paid webhook ---

    def handle_orders_paid(self, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        if not verify_webhook(raw_body, signature, self.settings.webhook_secret):
            self.audit.record(EventType.WEBHOOK_INVALID, "Invalid webhook signature")
            raise AuthenticationFailure("Invalid webhook signature")

        parsed = parse_webhook_payload(raw_body)
        if isinstance(parsed, ValidationFailure):
            self.audit.record(EventType.WEBHOOK_SKIPPED, parsed.message, parsed.order_id)
            return WebhookResult(accepted=False, note=parsed.message, order_id=parsed.order_id)

        items = self.resolve_items(parsed.line_items)
        if not items:
            self.audit.record(EventType.WEBHOOK_SKIPPED, "No ebook items", parsed.order_id)
            return WebhookResult(accepted=False, note="No ebook items", order_id=parsed.order_id)

        self.orders.upsert(
            Order(
                id=parsed.order_id,
                customer_id=parsed.customer_id,
                email=parsed.email,
                created_at=self.clock(),
            )
        )
        links = self.issue_links(parsed.order_id, items)
        log.info("▶️ Order %s: issued %d link(s)", parsed.order_id, len(links))

        email_sent = self.send_links(
            order_id=parsed.order_id,
            to=parsed.email,
            subject="Your ebook download link",
            intro="Thanks for your purchase.",
            links=links,
            success_message=f"Sent {len(links)} link(s) to {parsed.email}",
            failure_prefix="Email failed",
        )
        return WebhookResult(
            accepted=True,
            note="ok",
            order_id=parsed.order_id,
            links=links,
            email_sent=email_sent,
        )

    def resolve_items(self, line_items: List[LineItem]) -> List[DeliverableItem]:
        """Keep the line items that map to an ebook in the catalog."""
        out = []
        for line_item in line_items:
            match = self.catalog.find(line_item.product_id)
            if match is None:
                continue
            out.append(
                DeliverableItem(
                    product_id=match.product_id,
                    title=match.title or line_item.title or match.file_name,
                    file_name=match.file_name,
                )
            )
        return out

    def issue_links(self, order_id: int, items: List[DeliverableItem]) -> List[dict]:
        links = []
        for item in items:
            token = self.ledger.issue(order_id, item.product_id, item.file_name, self.ttl)
            links.append(
                {
                    "title": item.title,
                    "url": make_download_link(self.settings.base_url, token.token),
                    "expires_at": token.expires_at.isoformat(),
                }
            )
        return links

    def send_links(
        self,
        order_id: int,
        to: str,
        subject: str,
        intro: str,
        links: List[dict],
        success_message: str,
        failure_prefix: str,
    ) -> bool:
        """Email the links and audit the outcome. Issued tokens stay valid either way."""
        html_content, text = build_link_email(intro, links)
        try:
            self.mailer(to, subject, html_content, text)
        except Exception as e:
            log.exception("❌ Email to %s for order %s failed", to, order_id)
            self.audit.record(EventType.EMAIL_FAILED, f"{failure_prefix}: {str(e) or 'unknown error'}", order_id)
            return False
        self.audit.record(EventType.EMAIL_SENT, success_message, order_id)
        return True

    # --- /download/{token} ---

    def resolve_file(self, file_name: str) -> Optional[Path]:
        base = Path(self.settings.ebooks_dir).resolve()
        candidate = (base / file_name).resolve()
        if base not in candidate.parents or not candidate.is_file():
            return None
        return candidate

    def _download_denied(self, denial: Denied) -> None:
        order_id = denial.token.order_id if denial.token is not None else None
        self.audit.record(EventType.DOWNLOAD_FAILED, denial.message.rstrip("."), order_id)

    def _file_missing(self, token: DownloadToken) -> DependencyFailure:
        log.error("File %s for order %s is missing from %s", token.file_name, token.order_id, self.settings.ebooks_dir)
        self.audit.record(EventType.DOWNLOAD_FAILED, "File missing", token.order_id)
        return DependencyFailure("File missing.")

    def redeem_download(self, token_id: str) -> Deliverable:
        now = self.clock()
        try:
            token = self.ledger.check(token_id, now)
        except Denied as denial:
            self._download_denied(denial)
            raise

        if self.resolve_file(token.file_name) is None:
            raise self._file_missing(token)

        try:
            token = self.ledger.redeem(token_id, now)
        except Denied as denial:
            self._download_denied(denial)
            raise

        # the file may have gone away while the token was being marked
        path = self.resolve_file(token.file_name)
        if path is None:
            self.ledger.release(token)
            raise self._file_missing(token)

        self.audit.record(EventType.DOWNLOAD_SUCCESS, f"Downloaded {token.file_name}", token.order_id)
        return Deliverable(path=path, filename=Path(token.file_name).name, token=token)

    # --- /proxy/regenerate ---

    def regenerate(self, params: Mapping[str, ParamValue]) -> RegeneratedLinks:
        """Issue fresh links for an order the signed-in customer owns.

        Earlier tokens are left alone and expire on their own schedule. The
        email is not sent here; pass the result to deliver_regenerated.
        """
        if not verify_proxy_request(params, self.settings.proxy_secret):
            self.audit.record(EventType.REGEN_FAILED, "Invalid proxy signature")
            raise AuthenticationFailure("Invalid proxy signature.")

        order_id = _positive_int(params.get("order_id"))
        customer_id = _positive_int(params.get("logged_in_customer_id"))
        if not order_id or not customer_id:
            self.audit.record(EventType.REGEN_FAILED, "Missing order_id or customer id", order_id)
            raise ValidationFailure("Missing order_id or customer id.")

        order = self.orders.owned_by(order_id, customer_id)
        if order is None:
            self.audit.record(EventType.REGEN_FAILED, "Order not found for this customer", order_id)
            raise Denied(DenialReason.NOT_OWNER, "Order not found for this customer.", 403)

        previous = self.ledger.list_by_order(order_id)
        if not previous:
            self.audit.record(EventType.REGEN_FAILED, "No ebook records found", order_id)
            raise NotFound("No ebook records found.")

        items = []
        seen = set()
        for token in previous:
            key = (token.product_id, token.file_name)
            if key in seen:
                continue
            seen.add(key)
            match = self.catalog.find(token.product_id)
            title = match.title if match and match.title else token.file_name
            items.append(DeliverableItem(product_id=token.product_id, title=title, file_name=token.file_name))

        links = self.issue_links(order_id, items)
        log.info("Order %s: regenerated %d link(s)", order_id, len(links))
        return RegeneratedLinks(order=order, links=links)

    def deliver_regenerated(self, regenerated: RegeneratedLinks) -> bool:
        order = regenerated.order
        return self.send_links(
            order_id=order.id,
            to=order.email,
            subject="Your regenerated ebook link",
            intro="Your link has been regenerated.",
            links=regenerated.links,
            success_message=f"Regenerated {len(regenerated.links)} link(s) for {order.email}",
            failure_prefix="Regenerate email failed",
        )

    # --- dashboard ---

    def dashboard_data(self) -> dict:
        return {"events": self.audit.recent(), "orders": self.audit.orders_with_activity()}
