from datetime import timedelta

import pytest

from errors import DependencyFailure
from models import EventType

from conftest import BOOK_BYTES, BOOK_PRODUCT_ID, order_payload, post_webhook


def _issue(client, store, product_ids=None):
    payload = order_payload() if product_ids is None else order_payload(product_ids=product_ids)
    assert post_webhook(client, payload).status_code == 200
    return store.list_tokens(1001)[-1].token


def _failures(store):
    return [e for e in store.list_events() if e.type is EventType.DOWNLOAD_FAILED]


def test_scenario_paid_order_download_then_reuse(client, store, clock):
    token = _issue(client, store)

    clock.advance(minutes=4, seconds=59)
    first = client.get(f"/download/{token}")
    assert first.status_code == 200
    assert first.content == BOOK_BYTES
    assert 'filename="book.epub"' in first.headers["content-disposition"]
    assert store.get_token(token).used_at == clock.now

    second = client.get(f"/download/{token}")
    assert second.status_code == 410
    assert second.text == "Link already used."

    success = [e for e in store.list_events() if e.type is EventType.DOWNLOAD_SUCCESS]
    assert [e.message for e in success] == ["Downloaded book.epub"]
    assert _failures(store)[-1].message == "Link already used"


def test_unknown_token_is_404_without_order(client, store):
    response = client.get("/download/not-a-real-token")

    assert response.status_code == 404
    assert response.text == "Link not found."
    [event] = _failures(store)
    assert (event.order_id, event.message) == (None, "Link not found")


def test_expired_token_is_410(client, store, clock):
    token = _issue(client, store)
    clock.advance(minutes=5, seconds=1)

    response = client.get(f"/download/{token}")

    assert response.status_code == 410
    assert response.text == "Link expired."
    [event] = _failures(store)
    assert (event.order_id, event.message) == (1001, "Link expired")
    assert store.get_token(token).used_at is None


def test_expiry_boundary_is_inclusive(client, store, clock):
    token = _issue(client, store)
    clock.advance(minutes=5)
    assert client.get(f"/download/{token}").status_code == 200


def test_missing_file_is_404_and_token_stays_unused(client, store):
    token = _issue(client, store, product_ids=(777,))

    response = client.get(f"/download/{token}")

    assert response.status_code == 404
    assert response.text == "File missing."
    [event] = _failures(store)
    assert (event.order_id, event.message) == (1001, "File missing")
    assert store.get_token(token).used_at is None


def test_repeat_downloads_allowed_when_policy_off(make_client, store, clock):
    client = make_client(expire_after_download=False)
    token = _issue(client, store)

    for _ in range(3):
        clock.advance(minutes=1)
        assert client.get(f"/download/{token}").status_code == 200
    assert store.get_token(token).used_at is None

    clock.advance(minutes=3)
    assert client.get(f"/download/{token}").status_code == 410


def test_file_reference_cannot_escape_ebooks_dir(service, ebooks_dir):
    (ebooks_dir.parent / "secret.txt").write_text("nope")
    assert service.resolve_file("../secret.txt") is None
    assert service.resolve_file("book.epub") == (ebooks_dir / "book.epub").resolve()


def test_file_vanishing_during_redemption_releases_token(monkeypatch, service, store, ebooks_dir):
    token = service.ledger.issue(1001, BOOK_PRODUCT_ID, "book.epub", service.ttl)
    original = service.resolve_file
    calls = []

    def _disappears_after_first_check(file_name):
        calls.append(file_name)
        return original(file_name) if len(calls) == 1 else None

    monkeypatch.setattr(service, "resolve_file", _disappears_after_first_check)

    with pytest.raises(DependencyFailure):
        service.redeem_download(token.token)

    assert len(calls) == 2
    assert store.get_token(token.token).used_at is None
    [event] = _failures(store)
    assert (event.order_id, event.message) == (1001, "File missing")

    monkeypatch.setattr(service, "resolve_file", original)
    assert service.redeem_download(token.token).path == (ebooks_dir / "book.epub").resolve()
