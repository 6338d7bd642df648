# storage.py - persistence for orders, download tokens and audit events
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, create_engine, delete, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.event import listens_for
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.types import TypeDecorator

from errors import StorageError, TokenCollisionError
from models import AuditEvent, DownloadToken, EventType, Order

log = logging.getLogger("storage")


class UTCDateTime(TypeDecorator):
    """Aware UTC datetimes in, aware UTC datetimes out. SQLite keeps them naive."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class OrderRecord(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    customer_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class DownloadRecord(Base):
    """One issued link. `id` only fixes creation order; lookups go by token."""

    __tablename__ = "downloads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True, nullable=False)
    product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class EventRecord(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    order_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class DeliveryStore(ABC):
    """Primitive operations shared by the order store, token ledger and audit log.

    Every mutating call is atomic on its own: inserting an order that already
    exists is a no-op, marking a token used only succeeds while it is unused,
    and appending an event trims the log in the same step.
    """

    @abstractmethod
    def insert_order(self, order: Order) -> bool:
        """Insert unless the id exists. Returns True when a row was created."""

    @abstractmethod
    def get_order(self, order_id: int) -> Optional[Order]:
        pass

    @abstractmethod
    def insert_token(self, token: DownloadToken) -> None:
        """Raises TokenCollisionError when the token id is already stored."""

    @abstractmethod
    def get_token(self, token_id: str) -> Optional[DownloadToken]:
        pass

    @abstractmethod
    def mark_token_used(self, token_id: str, used_at: datetime) -> Optional[DownloadToken]:
        """Set used_at if it is still null. Returns the updated token, or None."""

    @abstractmethod
    def release_token(self, token_id: str, used_at: datetime) -> bool:
        """Clear used_at if it still equals `used_at`. Returns True when cleared."""

    @abstractmethod
    def list_tokens(self, order_id: int) -> List[DownloadToken]:
        """Tokens for an order in creation order."""

    @abstractmethod
    def append_event(self, event: AuditEvent, retention: int) -> AuditEvent:
        """Append, then drop the oldest events beyond `retention`."""

    @abstractmethod
    def list_events(self) -> List[AuditEvent]:
        """Retained events, oldest first."""

    def close(self) -> None:
        pass


class MemoryStore(DeliveryStore):
    """Process-local store with the same semantics as SQLiteStore."""

    def __init__(self):
        self._lock = threading.Lock()
        self._orders: Dict[int, Order] = {}
        self._tokens: Dict[str, DownloadToken] = {}
        self._events: List[AuditEvent] = []
        self._next_event_id = 1

    def insert_order(self, order: Order) -> bool:
        with self._lock:
            if order.id in self._orders:
                return False
            self._orders[order.id] = order
            return True

    def get_order(self, order_id: int) -> Optional[Order]:
        with self._lock:
            return self._orders.get(order_id)

    def insert_token(self, token: DownloadToken) -> None:
        with self._lock:
            if token.token in self._tokens:
                raise TokenCollisionError(f"token {token.token[:8]}... already exists")
            self._tokens[token.token] = token

    def get_token(self, token_id: str) -> Optional[DownloadToken]:
        with self._lock:
            return self._tokens.get(token_id)

    def mark_token_used(self, token_id: str, used_at: datetime) -> Optional[DownloadToken]:
        with self._lock:
            current = self._tokens.get(token_id)
            if current is None or current.used_at is not None:
                return None
            updated = replace(current, used_at=used_at)
            self._tokens[token_id] = updated
            return updated

    def release_token(self, token_id: str, used_at: datetime) -> bool:
        with self._lock:
            current = self._tokens.get(token_id)
            if current is None or current.used_at != used_at:
                return False
            self._tokens[token_id] = replace(current, used_at=None)
            return True

    def list_tokens(self, order_id: int) -> List[DownloadToken]:
        with self._lock:
            # dicts keep insertion order
            return [t for t in self._tokens.values() if t.order_id == order_id]

    def append_event(self, event: AuditEvent, retention: int) -> AuditEvent:
        with self._lock:
            stored = replace(event, id=self._next_event_id)
            self._next_event_id += 1
            self._events.append(stored)
            if len(self._events) > retention:
                del self._events[: len(self._events) - retention]
            return stored

    def list_events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)


class SQLiteStore(DeliveryStore):
    """Durable store on a single SQLite file.

    Every call runs in its own session and transaction. Transactions open with
    BEGIN IMMEDIATE so writers queue on the database lock instead of racing,
    and synchronous=FULL means a returned call survives a crash. Tables are
    created on first use.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._engine = None
        self._sessions: Optional[sessionmaker] = None

    def _session_factory(self) -> sessionmaker:
        with self._lock:
            if self._sessions is None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                engine = create_engine(
                    f"sqlite:///{self.path}",
                    connect_args={"check_same_thread": False, "timeout": 30},
                )

                @listens_for(engine, "connect")
                def sqlite_pragmas(dbapi_connection, connection_record):
                    # let SQLAlchemy's begin hook below own transaction control
                    dbapi_connection.isolation_level = None
                    cursor = dbapi_connection.cursor()
                    cursor.execute("PRAGMA journal_mode=WAL;")
                    cursor.execute("PRAGMA synchronous=FULL;")
                    cursor.execute("PRAGMA foreign_keys=ON;")
                    cursor.close()

                @listens_for(engine, "begin")
                def begin_immediate(conn):
                    conn.exec_driver_sql("BEGIN IMMEDIATE")

                try:
                    Base.metadata.create_all(engine)
                except SQLAlchemyError as e:
                    engine.dispose()
                    raise StorageError(f"cannot open {self.path}: {e}") from e
                self._engine = engine
                self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
                log.info("Opened delivery database at %s", self.path)
            return self._sessions

    @contextmanager
    def _transaction(self):
        sessions = self._session_factory()
        try:
            with sessions() as session, session.begin():
                yield session
        except IntegrityError as e:
            if "downloads.token" in str(e.orig):
                raise TokenCollisionError("download token already exists") from e
            raise StorageError(str(e.orig)) from e
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    @staticmethod
    def _order(row: OrderRecord) -> Order:
        return Order(id=row.id, customer_id=row.customer_id, email=row.email, created_at=row.created_at)

    @staticmethod
    def _token(row: DownloadRecord) -> DownloadToken:
        return DownloadToken(
            token=row.token,
            order_id=row.order_id,
            product_id=row.product_id,
            file_name=row.file_name,
            expires_at=row.expires_at,
            used_at=row.used_at,
            created_at=row.created_at,
        )

    @staticmethod
    def _event(row: EventRecord) -> AuditEvent:
        return AuditEvent(
            id=row.id,
            type=EventType(row.type),
            order_id=row.order_id,
            message=row.message,
            created_at=row.created_at,
        )

    def insert_order(self, order: Order) -> bool:
        stmt = (
            sqlite_insert(OrderRecord.__table__)
            .values(id=order.id, customer_id=order.customer_id, email=order.email, created_at=order.created_at)
            .on_conflict_do_nothing(index_elements=["id"])
        )
        with self._transaction() as session:
            return session.execute(stmt).rowcount == 1

    def get_order(self, order_id: int) -> Optional[Order]:
        with self._transaction() as session:
            row = session.get(OrderRecord, order_id)
            return self._order(row) if row is not None else None

    def insert_token(self, token: DownloadToken) -> None:
        with self._transaction() as session:
            session.add(
                DownloadRecord(
                    token=token.token,
                    order_id=token.order_id,
                    product_id=token.product_id,
                    file_name=token.file_name,
                    expires_at=token.expires_at,
                    used_at=token.used_at,
                    created_at=token.created_at,
                )
            )

    def get_token(self, token_id: str) -> Optional[DownloadToken]:
        with self._transaction() as session:
            row = session.scalars(select(DownloadRecord).where(DownloadRecord.token == token_id)).first()
            return self._token(row) if row is not None else None

    def mark_token_used(self, token_id: str, used_at: datetime) -> Optional[DownloadToken]:
        stmt = (
            update(DownloadRecord)
            .where(DownloadRecord.token == token_id, DownloadRecord.used_at.is_(None))
            .values(used_at=used_at)
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as session:
            if session.execute(stmt).rowcount != 1:
                return None
            row = session.scalars(select(DownloadRecord).where(DownloadRecord.token == token_id)).one()
            return self._token(row)

    def release_token(self, token_id: str, used_at: datetime) -> bool:
        stmt = (
            update(DownloadRecord)
            .where(DownloadRecord.token == token_id, DownloadRecord.used_at == used_at)
            .values(used_at=None)
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as session:
            return session.execute(stmt).rowcount == 1

    def list_tokens(self, order_id: int) -> List[DownloadToken]:
        stmt = select(DownloadRecord).where(DownloadRecord.order_id == order_id).order_by(DownloadRecord.id)
        with self._transaction() as session:
            return [self._token(r) for r in session.scalars(stmt)]

    def append_event(self, event: AuditEvent, retention: int) -> AuditEvent:
        row = EventRecord(
            type=event.type.value,
            order_id=event.order_id,
            message=event.message,
            created_at=event.created_at,
        )
        keep = select(EventRecord.id).order_by(EventRecord.id.desc()).limit(retention)
        with self._transaction() as session:
            session.add(row)
            session.flush()
            session.execute(
                delete(EventRecord)
                .where(EventRecord.id.not_in(keep))
                .execution_options(synchronize_session=False)
            )
            return replace(event, id=row.id)

    def list_events(self) -> List[AuditEvent]:
        with self._transaction() as session:
            return [self._event(r) for r in session.scalars(select(EventRecord).order_by(EventRecord.id))]

    def close(self) -> None:
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
                self._engine = None
                self._sessions = None
