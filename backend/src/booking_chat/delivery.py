from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from typing import Callable, Iterable, Literal, Protocol, Sequence
from uuid import uuid4

from .access_gate import check_restricted_send
from .config import DEFAULT_PRESET_QUESTIONS
from .errors import ConversationError, ValidationError
from .models import GateMode
from .thread_store import MessageRecord

logger = logging.getLogger(__name__)

OPTIMISTIC_PREFIX = "optimistic-"

SendStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class ViewEntry:
    message_id: str
    thread_id: str
    sender_id: str
    content: str
    sent_at: datetime
    sequence: int | None
    local_order: int
    pending: bool

    @classmethod
    def from_record(cls, record: MessageRecord, *, local_order: int) -> ViewEntry:
        return cls(
            message_id=record.message_id,
            thread_id=record.thread_id,
            sender_id=record.sender_id,
            content=record.content,
            sent_at=record.sent_at,
            sequence=record.sequence,
            local_order=local_order,
            pending=False,
        )


@dataclass(frozen=True)
class SendResult:
    status: SendStatus
    temp_id: str
    message: MessageRecord | None = None
    restored_text: str | None = None
    error: ConversationError | None = None


class MessageWriter(Protocol):
    async def append(self, *, thread_id: str, sender_id: str, content: str) -> MessageRecord: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _view_order(entry: ViewEntry) -> tuple:
    if entry.pending:
        return (1, entry.local_order)
    return (0, entry.sent_at, entry.sequence, entry.local_order)


class ReconciliationQueue:
    """Tracks optimistic sends and the canonical message each one became."""

    def __init__(self) -> None:
        self._pending: dict[str, str] = {}
        self._resolved: dict[str, str] = {}
        self._owner: dict[str, str] = {}

    def register(self, temp_id: str, content: str) -> None:
        self._pending[temp_id] = content

    def is_pending(self, temp_id: str) -> bool:
        return temp_id in self._pending

    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def find_pending(self, content: str) -> str | None:
        for temp_id, pending_content in self._pending.items():
            if pending_content == content:
                return temp_id
        return None

    def resolve(self, temp_id: str, canonical_id: str) -> None:
        self._pending.pop(temp_id, None)
        previous = self._resolved.get(temp_id)
        if previous is not None and previous != canonical_id and self._owner.get(previous) == temp_id:
            del self._owner[previous]
        self._resolved[temp_id] = canonical_id
        self._owner[canonical_id] = temp_id

    def reopen(self, temp_id: str, content: str) -> None:
        self._resolved.pop(temp_id, None)
        self._pending[temp_id] = content

    def discard(self, temp_id: str) -> None:
        self._pending.pop(temp_id, None)
        canonical_id = self._resolved.pop(temp_id, None)
        if canonical_id is not None and self._owner.get(canonical_id) == temp_id:
            del self._owner[canonical_id]

    def canonical_for(self, temp_id: str) -> str | None:
        return self._resolved.get(temp_id)

    def owner_of(self, canonical_id: str) -> str | None:
        return self._owner.get(canonical_id)


class DeliveryEngine:
    """Ordered in-memory view of one thread plus the optimistic send protocol.

    Canonical messages are keyed by their store id, so history loads, feed
    events and write results can arrive in any order without producing a
    second visible entry for the same message. An optimistic entry is replaced
    in place by the canonical message it became, or removed if the write fails.
    """

    def __init__(
        self,
        *,
        thread_id: str,
        sender_id: str,
        writer: MessageWriter,
        preset_catalog: Sequence[str] = DEFAULT_PRESET_QUESTIONS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._thread_id = thread_id
        self._sender_id = sender_id
        self._writer = writer
        self._catalog = tuple(preset_catalog)
        self._clock = clock or _now_utc
        self._entries: dict[str, ViewEntry] = {}
        self._ordered: list[ViewEntry] = []
        self._local_order = count(1)
        self._queue = ReconciliationQueue()
        self._closed = False

    @property
    def thread_id(self) -> str:
        return self._thread_id

    @property
    def sender_id(self) -> str:
        return self._sender_id

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def queue(self) -> ReconciliationQueue:
        return self._queue

    def view(self) -> list[ViewEntry]:
        return list(self._ordered)

    def pending_count(self) -> int:
        return sum(1 for entry in self._ordered if entry.pending)

    def load_history(self, messages: Iterable[MessageRecord]) -> int:
        return self.merge_history(messages)

    def merge_history(self, messages: Iterable[MessageRecord]) -> int:
        if self._closed:
            return 0
        added = sum(1 for message in messages if self._materialize(message))
        self._resort()
        return added

    def apply_inbound(self, message: MessageRecord) -> bool:
        if self._closed:
            return False
        added = self._materialize(message)
        if added:
            self._resort()
        else:
            logger.debug("ignoring duplicate feed event %s on thread %s", message.message_id, self._thread_id)
        return added

    def close(self) -> None:
        self._closed = True

    async def send(self, content: str, *, mode: GateMode) -> SendResult:
        if self._closed:
            raise ConversationError(f"session for thread {self._thread_id} is closed")
        text = content.strip()
        if not text:
            raise ValidationError("message content cannot be blank")
        if mode == "restricted":
            check_restricted_send(text, sender_id=self._sender_id, history=self._ordered, catalog=self._catalog)

        temp_id = f"{OPTIMISTIC_PREFIX}{uuid4().hex}"
        self._entries[temp_id] = ViewEntry(
            message_id=temp_id,
            thread_id=self._thread_id,
            sender_id=self._sender_id,
            content=text,
            sent_at=self._clock(),
            sequence=None,
            local_order=next(self._local_order),
            pending=True,
        )
        self._queue.register(temp_id, text)
        self._resort()

        try:
            message = await self._writer.append(thread_id=self._thread_id, sender_id=self._sender_id, content=text)
        except asyncio.CancelledError:
            if not self._closed:
                self._rollback(temp_id)
            raise
        except ConversationError as exc:
            logger.warning("send failed on thread %s (%s): %s", self._thread_id, exc.code, exc)
            if not self._closed:
                self._rollback(temp_id)
            return SendResult(status="failed", temp_id=temp_id, restored_text=content, error=exc)
        except Exception:
            logger.exception("unexpected send failure on thread %s", self._thread_id)
            if not self._closed:
                self._rollback(temp_id)
            raise

        if not self._closed:
            self._reconcile(temp_id, message)
        return SendResult(status="sent", temp_id=temp_id, message=message)

    def _materialize(self, message: MessageRecord) -> bool:
        if message.thread_id != self._thread_id or message.message_id in self._entries:
            return False
        if message.sender_id == self._sender_id and self._queue.owner_of(message.message_id) is None:
            # The feed can beat the write result back; claim the matching optimistic entry.
            temp_id = self._queue.find_pending(message.content)
            if temp_id is not None:
                optimistic = self._entries.pop(temp_id, None)
                self._queue.resolve(temp_id, message.message_id)
                local_order = optimistic.local_order if optimistic is not None else next(self._local_order)
                self._entries[message.message_id] = ViewEntry.from_record(message, local_order=local_order)
                return True
        self._entries[message.message_id] = ViewEntry.from_record(message, local_order=next(self._local_order))
        return True

    def _reconcile(self, temp_id: str, message: MessageRecord) -> None:
        canonical_id = message.message_id
        claimed = self._queue.canonical_for(temp_id)
        if canonical_id in self._entries:
            owner = self._queue.owner_of(canonical_id)
            if owner is not None and owner != temp_id:
                # Another optimistic send with identical content claimed this message first.
                optimistic = self._entries.pop(temp_id, None)
                if optimistic is not None:
                    self._entries[owner] = replace(optimistic, message_id=owner)
                    self._queue.reopen(owner, optimistic.content)
                elif claimed is not None:
                    self._queue.resolve(owner, claimed)
            else:
                self._entries.pop(temp_id, None)
            self._queue.resolve(temp_id, canonical_id)
        else:
            if claimed is not None and claimed != canonical_id:
                # The claimed message came from elsewhere; it keeps its own entry.
                self._queue.discard(temp_id)
            optimistic = self._entries.pop(temp_id, None)
            local_order = optimistic.local_order if optimistic is not None else next(self._local_order)
            self._entries[canonical_id] = ViewEntry.from_record(message, local_order=local_order)
            self._queue.resolve(temp_id, canonical_id)
        self._resort()

    def _rollback(self, temp_id: str) -> None:
        self._entries.pop(temp_id, None)
        self._queue.discard(temp_id)
        self._resort()

    def _resort(self) -> None:
        self._ordered = sorted(self._entries.values(), key=_view_order)
