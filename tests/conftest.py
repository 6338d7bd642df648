import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import List

import pytest
from fastapi.testclient import TestClient

from app import create_app
from errors import EmailDeliveryError
from fulfillment import FulfillmentService
from products_config import Ebook, ProductCatalog
from settings import Settings
from signatures import sign_proxy_request, sign_webhook
from storage import MemoryStore

WEBHOOK_SECRET = "whsec-test"
PROXY_SECRET = "proxy-test"
BOOK_PRODUCT_ID = 632910392
BOOK_BYTES = b"EPUB-BYTES-FOR-TESTS"
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingMailer:
    """Stands in for send_download_email; optionally fails every call."""

    def __init__(self):
        self.sent: List[dict] = []
        self.fail_with = None

    def __call__(self, to, subject, html_content, text):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({"to": to, "subject": subject, "html": html_content, "text": text})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def ebooks_dir(tmp_path):
    directory = tmp_path / "ebooks"
    directory.mkdir()
    (directory / "book.epub").write_bytes(BOOK_BYTES)
    return directory


@pytest.fixture
def catalog():
    return ProductCatalog(
        products=[
            Ebook(product_id=BOOK_PRODUCT_ID, title="The Quiet Harbor", file_name="book.epub"),
            Ebook(product_id=777, title="Missing On Disk", file_name="missing.pdf"),
        ]
    )


@pytest.fixture
def settings(ebooks_dir, tmp_path):
    return Settings(
        base_url="https://books.example.com",
        webhook_secret=WEBHOOK_SECRET,
        proxy_secret=PROXY_SECRET,
        expiry_minutes=5,
        expire_after_download=True,
        email_mode="console",
        ebooks_dir=ebooks_dir,
        database_path=tmp_path / "db.sqlite",
    )


@pytest.fixture
def service(settings, store, catalog, mailer, clock):
    return FulfillmentService(settings, store, catalog, mailer, clock)


@pytest.fixture
def make_client(settings, store, catalog, mailer, clock):
    def _make(**overrides):
        app = create_app(replace(settings, **overrides), store=store, catalog=catalog, mailer=mailer, clock=clock)
        return TestClient(app)

    return _make


@pytest.fixture
def client(make_client):
    return make_client()


def order_payload(order_id=1001, email="a@example.com", customer_id=42, product_ids=(BOOK_PRODUCT_ID,)):
    payload = {
        "id": order_id,
        "email": email,
        "financial_status": "paid",
        "line_items": [{"product_id": pid, "title": f"Item {pid}", "quantity": 1} for pid in product_ids],
    }
    if customer_id is not None:
        payload["customer"] = {"id": customer_id, "email": email}
    return payload


def post_webhook(client, payload, secret=WEBHOOK_SECRET, signature=None):
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    sig = signature if signature is not None else sign_webhook(body, secret)
    if sig:
        headers["X-Shopify-Hmac-Sha256"] = sig
    return client.post("/webhooks/orders_paid", content=body, headers=headers)


def signed_proxy_params(secret=PROXY_SECRET, **params):
    params.setdefault("shop", "books.myshopify.com")
    params.setdefault("path_prefix", "/apps/ebooks")
    params.setdefault("timestamp", "1767268800")
    params["signature"] = sign_proxy_request(params, secret)
    return params


def failing_mailer_error(message="SMTP connection refused"):
    return EmailDeliveryError(message)
