import threading
from datetime import timedelta

import pytest

from errors import StorageError, TokenCollisionError
from models import AuditEvent, DownloadToken, EventType, Order
from storage import MemoryStore, SQLiteStore

from conftest import T0


def _order(order_id=1001, email="a@example.com", customer_id=42):
    return Order(id=order_id, customer_id=customer_id, email=email, created_at=T0)


def _token(token_id="t1", order_id=1001):
    return DownloadToken(
        token=token_id,
        order_id=order_id,
        product_id=5,
        file_name="book.epub",
        expires_at=T0 + timedelta(minutes=5),
        used_at=None,
        created_at=T0,
    )


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    store = MemoryStore() if request.param == "memory" else SQLiteStore(tmp_path / "store.sqlite")
    yield store
    store.close()


def test_insert_order_first_write_wins(any_store):
    assert any_store.insert_order(_order()) is True
    assert any_store.insert_order(_order(email="b@example.com", customer_id=99)) is False

    stored = any_store.get_order(1001)
    assert stored.email == "a@example.com"
    assert stored.customer_id == 42


def test_token_roundtrip_and_mark_used_once(any_store):
    any_store.insert_order(_order())
    any_store.insert_token(_token())

    assert any_store.get_token("t1") == _token()
    used = any_store.mark_token_used("t1", T0 + timedelta(minutes=1))
    assert used.used_at == T0 + timedelta(minutes=1)
    assert any_store.mark_token_used("t1", T0 + timedelta(minutes=2)) is None
    assert any_store.get_token("t1").used_at == T0 + timedelta(minutes=1)
    assert any_store.mark_token_used("missing", T0) is None


def test_duplicate_token_raises_collision(any_store):
    any_store.insert_order(_order())
    any_store.insert_token(_token())
    with pytest.raises(TokenCollisionError):
        any_store.insert_token(_token())


def test_events_trimmed_oldest_first(any_store):
    for i in range(7):
        any_store.append_event(AuditEvent(EventType.EMAIL_SENT, 1001, f"event {i}", T0), retention=5)

    events = any_store.list_events()
    assert [e.message for e in events] == [f"event {i}" for i in range(2, 7)]
    assert all(e.id is not None for e in events)


def test_sqlite_state_survives_reopen(tmp_path):
    path = tmp_path / "nested" / "delivery.sqlite"
    store = SQLiteStore(path)
    store.insert_order(_order())
    store.insert_token(_token())
    store.mark_token_used("t1", T0)
    store.append_event(AuditEvent(EventType.DOWNLOAD_SUCCESS, 1001, "Downloaded book.epub", T0), retention=500)
    store.close()

    reopened = SQLiteStore(path)
    assert reopened.get_order(1001).email == "a@example.com"
    assert reopened.get_token("t1").used_at == T0
    assert [t.token for t in reopened.list_tokens(1001)] == ["t1"]
    assert reopened.list_events()[0].type is EventType.DOWNLOAD_SUCCESS
    reopened.close()


def test_sqlite_token_requires_known_order(tmp_path):
    store = SQLiteStore(tmp_path / "fk.sqlite")
    with pytest.raises(StorageError) as exc:
        store.insert_token(_token(order_id=4040))
    assert not isinstance(exc.value, TokenCollisionError)
    store.close()


def test_concurrent_order_inserts_create_one_row(any_store):
    results = []
    barrier = threading.Barrier(8)

    def _worker(i):
        barrier.wait()
        results.append((i, any_store.insert_order(_order(email=f"buyer{i}@example.com"))))

    threads = [threading.Thread(target=_worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [i for i, created in results if created]
    assert len(results) == 8
    assert len(winners) == 1
    assert any_store.get_order(1001).email == f"buyer{winners[0]}@example.com"


def test_sqlite_datetimes_come_back_aware_utc(tmp_path):
    store = SQLiteStore(tmp_path / "tz.sqlite")
    store.insert_order(_order())
    store.insert_token(_token())

    stored = store.get_token("t1")
    assert stored.expires_at.tzinfo is not None
    assert stored.expires_at == T0 + timedelta(minutes=5)
    assert store.get_order(1001).created_at == T0
    store.close()


def test_release_token_only_clears_matching_mark(any_store):
    any_store.insert_order(_order())
    any_store.insert_token(_token())
    used_at = T0 + timedelta(minutes=1)
    any_store.mark_token_used("t1", used_at)

    assert any_store.release_token("t1", T0) is False
    assert any_store.get_token("t1").used_at == used_at
    assert any_store.release_token("t1", used_at) is True
    assert any_store.get_token("t1").used_at is None
    assert any_store.release_token("missing", used_at) is False
