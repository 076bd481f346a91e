"""SQLAlchemy-backed store.

Sessions are synchronous; every public coroutine hands its work to the
default executor so file polling never blocks on the database.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from functools import partial
from typing import TypeVar

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.exc import ArgumentError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..errors import ConfigurationError, DuplicateEventError, UnknownConnectionError
from ..models import ConnectionRecord, DeliveryEvent, EventType, FileReadState, IpInfo
from .base import DUPLICATE_TOLERANCE

logger = logging.getLogger(__name__)

Base = declarative_base()

T = TypeVar("T")


class LogFileStateRow(Base):
    __tablename__ = "log_file_state"
    __table_args__ = (UniqueConstraint("file_name", "inode", name="uq_log_file_state_incarnation"),)

    id = Column(Integer, primary_key=True)
    file_name = Column(String(255), nullable=False, index=True)
    inode = Column(BigInteger, nullable=False)
    last_read_position = Column(BigInteger, nullable=False, default=0)
    last_modified = Column(DateTime, nullable=True)
    last_checked = Column(DateTime, nullable=True)


class EmailEventRow(Base):
    __tablename__ = "email_event"
    __table_args__ = (
        UniqueConstraint("queue_id", "event_type", "data", "timestamp", name="uq_email_event"),
        Index("ix_email_event_queue_type", "queue_id", "event_type"),
    )

    id = Column(Integer, primary_key=True)
    queue_id = Column(String(20), nullable=False, default="")  # "" for connect lines
    timestamp = Column(DateTime, nullable=False, index=True)
    event_type = Column(String(10), nullable=False)
    data = Column(String(255), nullable=False)
    raw_line = Column(Text, nullable=True)


class ConnectionRow(Base):
    __tablename__ = "connection_event"

    id = Column(Integer, primary_key=True)
    ip_address = Column(String(45), nullable=False, unique=True)
    amount = Column(BigInteger, nullable=False, default=1)
    blacklisted = Column(Boolean, nullable=False, default=False)
    isp = Column(String(255), nullable=True)
    org = Column(String(255), nullable=True)
    country = Column(String(255), nullable=True)
    ip_info_last_updated = Column(DateTime, nullable=True)
    last_timestamp = Column(DateTime, nullable=False)


def _to_db(ts: datetime | None) -> datetime | None:
    """Store timestamps as naive UTC."""
    if ts is None:
        return None
    if ts.tzinfo is not None:
        ts = ts.astimezone(UTC).replace(tzinfo=None)
    return ts


def _from_db(ts: datetime | None) -> datetime | None:
    if ts is None:
        return None
    return ts.replace(tzinfo=UTC) if ts.tzinfo is None else ts.astimezone(UTC)


def _state_from_row(row: LogFileStateRow) -> FileReadState:
    return FileReadState(
        file_name=row.file_name,
        inode=int(row.inode),
        last_read_position=int(row.last_read_position),
        last_modified=_from_db(row.last_modified),
        last_checked=_from_db(row.last_checked),
    )


def _event_from_row(row: EmailEventRow) -> DeliveryEvent:
    return DeliveryEvent(
        queue_id=row.queue_id or None,
        timestamp=_from_db(row.timestamp),
        event_type=EventType(row.event_type),
        data=row.data,
        raw_line=row.raw_line,
    )


def _connection_from_row(row: ConnectionRow) -> ConnectionRecord:
    return ConnectionRecord(
        ip_address=row.ip_address,
        amount=int(row.amount),
        last_timestamp=_from_db(row.last_timestamp),
        blacklisted=bool(row.blacklisted),
        isp=row.isp,
        org=row.org,
        country=row.country,
        ip_info_last_updated=_from_db(row.ip_info_last_updated),
    )


def _build_url(raw_url: str) -> URL:
    """Parse the database URL, raising ConfigurationError when it is unusable."""
    if not raw_url or not raw_url.strip():
        raise ConfigurationError("MAILLOG_DB_URL is empty.")
    try:
        url = make_url(raw_url)
    except ArgumentError as exc:
        raise ConfigurationError(f"Invalid MAILLOG_DB_URL '{raw_url}'") from exc

    safe_url = url.set(password="***") if url.password else url
    logger.info("Using MAILLOG_DB_URL=%s", safe_url)
    return url


def create_db_engine(raw_url: str) -> Engine:
    url = _build_url(raw_url)
    kwargs: dict = {"pool_pre_ping": True}
    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if url.database in (None, "", ":memory:"):
            # One shared connection, otherwise each executor thread sees its own empty db.
            kwargs["poolclass"] = StaticPool
    try:
        return create_engine(url, **kwargs)
    except SQLAlchemyError:
        logger.exception("Failed to create database engine for %s", url)
        raise


class SqlStore:
    """Store over any SQLAlchemy-supported database."""

    def __init__(self, engine: Engine, *, create_schema: bool = True) -> None:
        self._engine = engine
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        if create_schema:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, raw_url: str) -> SqlStore:
        return cls(create_db_engine(raw_url))

    async def _run(self, fn: Callable[..., T], *args) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args))

    # File read state

    def _get_file_states(self, file_name: str) -> list[FileReadState]:
        with self._sessions() as session:
            rows = session.scalars(
                select(LogFileStateRow).where(LogFileStateRow.file_name == file_name)
            ).all()
            return [_state_from_row(r) for r in rows]

    async def get_file_states(self, file_name: str) -> list[FileReadState]:
        return await self._run(self._get_file_states, file_name)

    def _list_file_states(self) -> list[FileReadState]:
        with self._sessions() as session:
            rows = session.scalars(
                select(LogFileStateRow).order_by(LogFileStateRow.file_name)
            ).all()
            return [_state_from_row(r) for r in rows]

    async def list_file_states(self) -> list[FileReadState]:
        return await self._run(self._list_file_states)

    def _save_file_state(self, state: FileReadState) -> None:
        with self._sessions.begin() as session:
            row = session.scalars(
                select(LogFileStateRow).where(
                    LogFileStateRow.file_name == state.file_name,
                    LogFileStateRow.inode == state.inode,
                )
            ).one_or_none()
            if row is None:
                row = LogFileStateRow(file_name=state.file_name, inode=state.inode)
                session.add(row)
            row.last_read_position = state.last_read_position
            row.last_modified = _to_db(state.last_modified)
            row.last_checked = _to_db(state.last_checked)

    async def save_file_state(self, state: FileReadState) -> None:
        await self._run(self._save_file_state, state)

    def _delete_file_state(self, file_name: str, inode: int) -> None:
        with self._sessions.begin() as session:
            session.execute(
                delete(LogFileStateRow).where(
                    LogFileStateRow.file_name == file_name,
                    LogFileStateRow.inode == inode,
                )
            )

    async def delete_file_state(self, file_name: str, inode: int) -> None:
        await self._run(self._delete_file_state, file_name, inode)

    # Delivery events

    def _insert_event(self, event: DeliveryEvent) -> None:
        ts = _to_db(event.timestamp)
        queue_id = event.queue_id or ""
        with self._sessions() as session:
            existing = session.scalars(
                select(EmailEventRow.id)
                .where(
                    EmailEventRow.queue_id == queue_id,
                    EmailEventRow.event_type == event.event_type.value,
                    EmailEventRow.data == event.data,
                    EmailEventRow.timestamp >= ts - DUPLICATE_TOLERANCE,
                    EmailEventRow.timestamp <= ts + DUPLICATE_TOLERANCE,
                )
                .limit(1)
            ).first()
            if existing is not None:
                raise DuplicateEventError(f"{queue_id} {event.event_type.value} {event.data}")

            session.add(
                EmailEventRow(
                    queue_id=queue_id,
                    timestamp=ts,
                    event_type=event.event_type.value,
                    data=event.data,
                    raw_line=event.raw_line,
                )
            )
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateEventError(
                    f"{queue_id} {event.event_type.value} {event.data}"
                ) from exc

    async def insert_event(self, event: DeliveryEvent) -> None:
        await self._run(self._insert_event, event)

    def _events_between(
        self,
        start: datetime,
        end: datetime,
        event_type: EventType | None,
    ) -> list[DeliveryEvent]:
        stmt = select(EmailEventRow).where(
            EmailEventRow.timestamp >= _to_db(start),
            EmailEventRow.timestamp < _to_db(end),
        )
        if event_type is not None:
            stmt = stmt.where(EmailEventRow.event_type == event_type.value)
        stmt = stmt.order_by(EmailEventRow.timestamp, EmailEventRow.id)
        with self._sessions() as session:
            return [_event_from_row(r) for r in session.scalars(stmt).all()]

    async def events_between(
        self,
        start: datetime,
        end: datetime,
        event_type: EventType | None = None,
    ) -> list[DeliveryEvent]:
        return await self._run(self._events_between, start, end, event_type)

    def _events_for_queue(
        self,
        queue_id: str,
        event_type: EventType | None,
    ) -> list[DeliveryEvent]:
        stmt = select(EmailEventRow).where(EmailEventRow.queue_id == queue_id)
        if event_type is not None:
            stmt = stmt.where(EmailEventRow.event_type == event_type.value)
        stmt = stmt.order_by(EmailEventRow.timestamp, EmailEventRow.id)
        with self._sessions() as session:
            return [_event_from_row(r) for r in session.scalars(stmt).all()]

    async def events_for_queue(
        self,
        queue_id: str,
        event_type: EventType | None = None,
    ) -> list[DeliveryEvent]:
        return await self._run(self._events_for_queue, queue_id, event_type)

    # Connection records

    def _bump(self, session: Session, ip_address: str, ts: datetime | None) -> bool:
        result = session.execute(
            update(ConnectionRow)
            .where(ConnectionRow.ip_address == ip_address)
            .values(amount=ConnectionRow.amount + 1, last_timestamp=ts)
        )
        return result.rowcount > 0

    def _increment_connection(self, ip_address: str, timestamp: datetime) -> ConnectionRecord:
        ts = _to_db(timestamp)
        with self._sessions() as session:
            if not self._bump(session, ip_address, ts):
                session.add(
                    ConnectionRow(
                        ip_address=ip_address,
                        amount=1,
                        last_timestamp=ts,
                        blacklisted=False,
                    )
                )
                try:
                    session.flush()
                except IntegrityError:
                    # Another writer created the row first.
                    session.rollback()
                    self._bump(session, ip_address, ts)
            session.commit()
            row = session.scalars(
                select(ConnectionRow).where(ConnectionRow.ip_address == ip_address)
            ).one()
            return _connection_from_row(row)

    async def increment_connection(self, ip_address: str, timestamp: datetime) -> ConnectionRecord:
        return await self._run(self._increment_connection, ip_address, timestamp)

    def _get_connection(self, ip_address: str) -> ConnectionRecord | None:
        with self._sessions() as session:
            row = session.scalars(
                select(ConnectionRow).where(ConnectionRow.ip_address == ip_address)
            ).one_or_none()
            return _connection_from_row(row) if row is not None else None

    async def get_connection(self, ip_address: str) -> ConnectionRecord | None:
        return await self._run(self._get_connection, ip_address)

    def _stale_connections(self, cutoff: datetime, limit: int) -> list[ConnectionRecord]:
        stmt = (
            select(ConnectionRow)
            .where(
                (ConnectionRow.ip_info_last_updated.is_(None))
                | (ConnectionRow.ip_info_last_updated < _to_db(cutoff))
            )
            .order_by(ConnectionRow.last_timestamp.desc())
            .limit(limit)
        )
        with self._sessions() as session:
            return [_connection_from_row(r) for r in session.scalars(stmt).all()]

    async def stale_connections(self, cutoff: datetime, limit: int) -> list[ConnectionRecord]:
        return await self._run(self._stale_connections, cutoff, limit)

    def _update_ip_info(self, ip_address: str, info: IpInfo, updated_at: datetime) -> None:
        with self._sessions.begin() as session:
            session.execute(
                update(ConnectionRow)
                .where(ConnectionRow.ip_address == ip_address)
                .values(
                    isp=info.isp,
                    org=info.org,
                    country=info.country,
                    ip_info_last_updated=_to_db(updated_at),
                )
            )

    async def update_ip_info(self, ip_address: str, info: IpInfo, updated_at: datetime) -> None:
        await self._run(self._update_ip_info, ip_address, info, updated_at)

    def _set_blacklisted(self, ip_address: str, blacklisted: bool) -> ConnectionRecord:
        with self._sessions.begin() as session:
            row = session.scalars(
                select(ConnectionRow).where(ConnectionRow.ip_address == ip_address)
            ).one_or_none()
            if row is None:
                raise UnknownConnectionError(ip_address)
            row.blacklisted = blacklisted
            session.flush()
            return _connection_from_row(row)

    async def set_blacklisted(self, ip_address: str, blacklisted: bool) -> ConnectionRecord:
        return await self._run(self._set_blacklisted, ip_address, blacklisted)

    def _top_connections(self, limit: int) -> list[ConnectionRecord]:
        stmt = (
            select(ConnectionRow)
            .order_by(ConnectionRow.amount.desc(), ConnectionRow.last_timestamp.desc())
            .limit(limit)
        )
        with self._sessions() as session:
            return [_connection_from_row(r) for r in session.scalars(stmt).all()]

    async def top_connections(self, limit: int) -> list[ConnectionRecord]:
        return await self._run(self._top_connections, limit)

    async def close(self) -> None:
        await self._run(self._engine.dispose)
