from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Callable, Iterable, Protocol
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import NotFoundError, TransientWriteError, ValidationError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class ThreadRecord:
    thread_id: str
    subject_ref: str | None
    created_at: datetime
    # First time the pair was seen with a confirmed booking; free text stays open after that.
    unlocked_at: datetime | None = None


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    thread_id: str
    sender_id: str
    content: str
    sent_at: datetime
    sequence: int


class ThreadRepository(Protocol):
    def reset(self) -> None: ...

    def create_thread(self, *, participant_ids: Iterable[str], subject_ref: str | None) -> ThreadRecord: ...

    def get_thread(self, thread_id: str) -> ThreadRecord | None: ...

    def participants(self, thread_id: str) -> tuple[str, str]: ...

    def record_unlock(self, thread_id: str) -> ThreadRecord: ...

    def clear_unlock(self, thread_id: str) -> ThreadRecord: ...

    def append(self, *, thread_id: str, sender_id: str, content: str) -> MessageRecord: ...

    def history(self, thread_id: str, *, limit: int | None = None) -> list[MessageRecord]: ...

    def list_threads_for(self, user_id: str) -> list[ThreadRecord]: ...

    def participants_for_threads(self, thread_ids: Iterable[str]) -> dict[str, tuple[str, str]]: ...

    def last_messages_for_threads(self, thread_ids: Iterable[str]) -> dict[str, MessageRecord]: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back out.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _normalize_participants(participant_ids: Iterable[str]) -> tuple[str, str]:
    normalized = [str(value).strip() for value in participant_ids]
    if any(not value for value in normalized):
        raise ValidationError("participant ids cannot be blank")
    if len(normalized) != 2:
        raise ValidationError("a thread requires exactly two participants")
    if normalized[0] == normalized[1]:
        raise ValidationError("a thread requires two distinct participants")
    return normalized[0], normalized[1]


def _normalize_content(content: str) -> str:
    normalized = content.strip()
    if not normalized:
        raise ValidationError("message content cannot be blank")
    return normalized


def _pair_key(participants: tuple[str, str], subject_ref: str | None) -> str:
    first, second = sorted(participants)
    return f"{first}|{second}|{subject_ref or ''}"


class InMemoryThreadRepository:
    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or _now_utc
        self._lock = Lock()
        self._thread_counter = count(1)
        self._sequence = count(1)
        self._threads: dict[str, ThreadRecord] = {}
        self._participants: dict[str, tuple[str, str]] = {}
        self._thread_by_pair: dict[str, str] = {}
        self._threads_by_user: dict[str, list[str]] = defaultdict(list)
        self._messages_by_thread: dict[str, list[MessageRecord]] = defaultdict(list)

    def reset(self) -> None:
        with self._lock:
            self._thread_counter = count(1)
            self._sequence = count(1)
            self._threads.clear()
            self._participants.clear()
            self._thread_by_pair.clear()
            self._threads_by_user.clear()
            self._messages_by_thread.clear()

    def create_thread(self, *, participant_ids: Iterable[str], subject_ref: str | None) -> ThreadRecord:
        participants = _normalize_participants(participant_ids)
        key = _pair_key(participants, subject_ref)
        with self._lock:
            existing_id = self._thread_by_pair.get(key)
            if existing_id is not None:
                return self._threads[existing_id]

            thread = ThreadRecord(
                thread_id=f"thread_{next(self._thread_counter):06d}",
                subject_ref=subject_ref,
                created_at=self._clock(),
            )
            self._threads[thread.thread_id] = thread
            self._participants[thread.thread_id] = participants
            self._thread_by_pair[key] = thread.thread_id
            for user_id in participants:
                self._threads_by_user[user_id].append(thread.thread_id)
            return thread

    def get_thread(self, thread_id: str) -> ThreadRecord | None:
        return self._threads.get(thread_id)

    def participants(self, thread_id: str) -> tuple[str, str]:
        participants = self._participants.get(thread_id)
        if participants is None:
            raise NotFoundError(f"thread not found: {thread_id}")
        return participants

    def record_unlock(self, thread_id: str) -> ThreadRecord:
        with self._lock:
            thread = self._threads.get(thread_id)
            if thread is None:
                raise NotFoundError(f"thread not found: {thread_id}")
            if thread.unlocked_at is None:
                thread = replace(thread, unlocked_at=self._clock())
                self._threads[thread_id] = thread
            return thread

    def clear_unlock(self, thread_id: str) -> ThreadRecord:
        with self._lock:
            thread = self._threads.get(thread_id)
            if thread is None:
                raise NotFoundError(f"thread not found: {thread_id}")
            thread = replace(thread, unlocked_at=None)
            self._threads[thread_id] = thread
            return thread

    def append(self, *, thread_id: str, sender_id: str, content: str) -> MessageRecord:
        body = _normalize_content(content)
        with self._lock:
            participants = self._participants.get(thread_id)
            if participants is None:
                raise NotFoundError(f"thread not found: {thread_id}")
            if sender_id not in participants:
                raise NotFoundError(f"sender {sender_id} is not a participant of {thread_id}")

            messages = self._messages_by_thread[thread_id]
            sent_at = self._clock()
            if messages and sent_at < messages[-1].sent_at:
                sent_at = messages[-1].sent_at
            sequence = next(self._sequence)
            message = MessageRecord(
                message_id=f"msg_{sequence:08d}",
                thread_id=thread_id,
                sender_id=sender_id,
                content=body,
                sent_at=sent_at,
                sequence=sequence,
            )
            messages.append(message)
            return message

    def history(self, thread_id: str, *, limit: int | None = None) -> list[MessageRecord]:
        if thread_id not in self._threads:
            raise NotFoundError(f"thread not found: {thread_id}")
        with self._lock:
            messages = list(self._messages_by_thread.get(thread_id, []))
        if limit is not None:
            return messages[-limit:] if limit > 0 else []
        return messages

    def list_threads_for(self, user_id: str) -> list[ThreadRecord]:
        with self._lock:
            return [self._threads[thread_id] for thread_id in self._threads_by_user.get(user_id, [])]

    def participants_for_threads(self, thread_ids: Iterable[str]) -> dict[str, tuple[str, str]]:
        return {
            thread_id: self._participants[thread_id]
            for thread_id in thread_ids
            if thread_id in self._participants
        }

    def last_messages_for_threads(self, thread_ids: Iterable[str]) -> dict[str, MessageRecord]:
        latest: dict[str, MessageRecord] = {}
        with self._lock:
            for thread_id in thread_ids:
                messages = self._messages_by_thread.get(thread_id)
                if messages:
                    latest[thread_id] = messages[-1]
        return latest


class ThreadsBase(DeclarativeBase):
    pass


class _ThreadRow(ThreadsBase):
    __tablename__ = "chat_threads"

    thread_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subject_ref: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    pair_key: Mapped[str] = mapped_column(String(400), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    unlocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class _ParticipantRow(ThreadsBase):
    __tablename__ = "chat_participants"
    __table_args__ = (UniqueConstraint("thread_id", "user_id", name="uq_chat_participants_thread_user"),)

    participant_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    thread_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("chat_threads.thread_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)


class _MessageRow(ThreadsBase):
    __tablename__ = "chat_messages"
    __table_args__ = (Index("ix_chat_messages_thread_order", "thread_id", "sent_at", "sequence"),)

    sequence: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True
    )
    message_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    thread_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("chat_threads.thread_id", ondelete="CASCADE"),
        nullable=False,
    )
    sender_id: Mapped[str] = mapped_column(String(128), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _engine_for(database_url: str):
    if database_url in {"sqlite://", "sqlite:///:memory:"}:
        return create_engine(
            database_url,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, future=True, connect_args={"check_same_thread": False})
    return create_engine(database_url, future=True, pool_pre_ping=True)


@contextmanager
def _store_call(action: str, thread_id: str | None = None):
    # Backend failures surface as one retryable error type, for reads and writes alike.
    try:
        yield
    except SQLAlchemyError as exc:
        logger.warning("thread store %s failed (thread=%s): %s", action, thread_id, exc)
        if thread_id is not None:
            raise TransientWriteError(f"thread store {action} failed for thread {thread_id}") from exc
        raise TransientWriteError(f"thread store {action} failed") from exc


class SqlAlchemyThreadRepository:
    def __init__(self, database_url: str, *, clock: Clock | None = None) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for THREAD_STORE_BACKEND=postgres")
        self._clock = clock or _now_utc
        self._engine = _engine_for(database_url)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ThreadsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with _store_call("reset"), self._session() as session:
            with session.begin():
                session.execute(delete(_MessageRow))
                session.execute(delete(_ParticipantRow))
                session.execute(delete(_ThreadRow))

    def create_thread(self, *, participant_ids: Iterable[str], subject_ref: str | None) -> ThreadRecord:
        participants = _normalize_participants(participant_ids)
        key = _pair_key(participants, subject_ref)
        with _store_call("create_thread"), self._session() as session:
            with session.begin():
                row = session.scalar(select(_ThreadRow).where(_ThreadRow.pair_key == key))
                if row is None:
                    row = _ThreadRow(
                        thread_id=f"thread_{uuid4().hex[:16]}",
                        subject_ref=subject_ref,
                        pair_key=key,
                        created_at=self._clock(),
                    )
                    session.add(row)
                    session.flush()
                    for user_id in participants:
                        session.add(_ParticipantRow(thread_id=row.thread_id, user_id=user_id))
                    session.flush()
                return self._thread_record(row)

    def get_thread(self, thread_id: str) -> ThreadRecord | None:
        with _store_call("get_thread", thread_id), self._session() as session:
            row = session.get(_ThreadRow, thread_id)
            return self._thread_record(row) if row is not None else None

    def participants(self, thread_id: str) -> tuple[str, str]:
        found = self.participants_for_threads([thread_id])
        if thread_id not in found:
            raise NotFoundError(f"thread not found: {thread_id}")
        return found[thread_id]

    def record_unlock(self, thread_id: str) -> ThreadRecord:
        with _store_call("record_unlock", thread_id), self._session() as session:
            with session.begin():
                row = session.get(_ThreadRow, thread_id)
                if row is None:
                    raise NotFoundError(f"thread not found: {thread_id}")
                if row.unlocked_at is None:
                    row.unlocked_at = self._clock()
                    session.flush()
                return self._thread_record(row)

    def clear_unlock(self, thread_id: str) -> ThreadRecord:
        with _store_call("clear_unlock", thread_id), self._session() as session:
            with session.begin():
                row = session.get(_ThreadRow, thread_id)
                if row is None:
                    raise NotFoundError(f"thread not found: {thread_id}")
                row.unlocked_at = None
                session.flush()
                return self._thread_record(row)

    def append(self, *, thread_id: str, sender_id: str, content: str) -> MessageRecord:
        body = _normalize_content(content)
        with _store_call("append", thread_id), self._session() as session:
            with session.begin():
                if session.get(_ThreadRow, thread_id) is None:
                    raise NotFoundError(f"thread not found: {thread_id}")
                membership = session.scalar(
                    select(_ParticipantRow.participant_id)
                    .where(_ParticipantRow.thread_id == thread_id)
                    .where(_ParticipantRow.user_id == sender_id)
                )
                if membership is None:
                    raise NotFoundError(f"sender {sender_id} is not a participant of {thread_id}")

                sent_at = self._clock()
                last_sent_at = session.scalar(
                    select(func.max(_MessageRow.sent_at)).where(_MessageRow.thread_id == thread_id)
                )
                if last_sent_at is not None and sent_at < _as_utc(last_sent_at):
                    sent_at = _as_utc(last_sent_at)

                row = _MessageRow(
                    message_id=f"msg_{uuid4().hex}",
                    thread_id=thread_id,
                    sender_id=sender_id,
                    content=body,
                    sent_at=sent_at,
                )
                session.add(row)
                session.flush()
                return self._message_record(row)

    def history(self, thread_id: str, *, limit: int | None = None) -> list[MessageRecord]:
        with _store_call("history", thread_id), self._session() as session:
            if session.get(_ThreadRow, thread_id) is None:
                raise NotFoundError(f"thread not found: {thread_id}")
            if limit is not None and limit <= 0:
                return []
            query = (
                select(_MessageRow)
                .where(_MessageRow.thread_id == thread_id)
                .order_by(_MessageRow.sent_at.desc(), _MessageRow.sequence.desc())
            )
            if limit is not None:
                query = query.limit(limit)
            rows = session.scalars(query).all()
            return [self._message_record(row) for row in reversed(rows)]

    def list_threads_for(self, user_id: str) -> list[ThreadRecord]:
        with _store_call("list_threads_for"), self._session() as session:
            rows = session.scalars(
                select(_ThreadRow)
                .join(_ParticipantRow, _ParticipantRow.thread_id == _ThreadRow.thread_id)
                .where(_ParticipantRow.user_id == user_id)
                .order_by(_ThreadRow.created_at.desc())
            ).all()
            return [self._thread_record(row) for row in rows]

    def participants_for_threads(self, thread_ids: Iterable[str]) -> dict[str, tuple[str, str]]:
        ids = list(thread_ids)
        if not ids:
            return {}
        grouped: dict[str, list[str]] = defaultdict(list)
        with _store_call("participants", ids[0] if len(ids) == 1 else None), self._session() as session:
            rows = session.execute(
                select(_ParticipantRow.thread_id, _ParticipantRow.user_id)
                .where(_ParticipantRow.thread_id.in_(ids))
                .order_by(_ParticipantRow.participant_id.asc())
            ).all()
        for thread_id, user_id in rows:
            grouped[thread_id].append(user_id)
        return {thread_id: (users[0], users[1]) for thread_id, users in grouped.items() if len(users) == 2}

    def last_messages_for_threads(self, thread_ids: Iterable[str]) -> dict[str, MessageRecord]:
        ids = list(thread_ids)
        if not ids:
            return {}
        ranked = (
            select(
                _MessageRow.sequence.label("sequence"),
                func.row_number()
                .over(
                    partition_by=_MessageRow.thread_id,
                    order_by=(_MessageRow.sent_at.desc(), _MessageRow.sequence.desc()),
                )
                .label("position"),
            )
            .where(_MessageRow.thread_id.in_(ids))
            .subquery()
        )
        with _store_call("last_messages"), self._session() as session:
            rows = session.scalars(
                select(_MessageRow)
                .join(ranked, ranked.c.sequence == _MessageRow.sequence)
                .where(ranked.c.position == 1)
            ).all()
            return {row.thread_id: self._message_record(row) for row in rows}

    @staticmethod
    def _thread_record(row: _ThreadRow) -> ThreadRecord:
        return ThreadRecord(
            thread_id=row.thread_id,
            subject_ref=row.subject_ref,
            created_at=_as_utc(row.created_at),
            unlocked_at=_as_utc(row.unlocked_at) if row.unlocked_at is not None else None,
        )

    @staticmethod
    def _message_record(row: _MessageRow) -> MessageRecord:
        return MessageRecord(
            message_id=row.message_id,
            thread_id=row.thread_id,
            sender_id=row.sender_id,
            content=row.content,
            sent_at=_as_utc(row.sent_at),
            sequence=row.sequence,
        )


def create_thread_repository(*, backend: str, database_url: str, clock: Clock | None = None) -> ThreadRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyThreadRepository(database_url, clock=clock)
    if normalized == "inmemory":
        return InMemoryThreadRepository(clock=clock)
    raise RuntimeError(f"unsupported THREAD_STORE_BACKEND: {backend}")
