from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from .access_gate import AccessGate, TransactionStatusOracle, available_presets, check_restricted_send
from .change_feed import ChangeFeed
from .config import Settings
from .contact_detection import ContactAdvisory, classify
from .errors import NotFoundError, ValidationError
from .identity import CatalogDirectory, IdentityDirectory
from .inbox import ThreadAggregator, ThreadSummary
from .models import GateMode
from .session import ConversationSession
from .thread_store import MessageRecord, ThreadRecord, ThreadRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PostedMessage:
    message: MessageRecord
    mode: GateMode
    advisory: ContactAdvisory


@dataclass(frozen=True)
class ThreadDetail:
    thread: ThreadRecord
    participant_ids: tuple[str, str]
    mode: GateMode
    available_presets: list[str]
    messages: list[MessageRecord]


class ConversationService:
    """Authoritative side of the conversation core.

    Owns every write to the thread store and publishes each persisted message
    to the change feed.
    """

    def __init__(
        self,
        *,
        repository: ThreadRepository,
        feed: ChangeFeed,
        oracle: TransactionStatusOracle,
        identities: IdentityDirectory,
        catalog: CatalogDirectory | None,
        settings: Settings,
    ) -> None:
        self._repository = repository
        self._feed = feed
        self._oracle = oracle
        self._settings = settings
        self._aggregator = ThreadAggregator(
            repository=repository,
            identities=identities,
            catalog=catalog,
            preview_length=settings.preview_length,
        )

    @property
    def repository(self) -> ThreadRepository:
        return self._repository

    def reset(self) -> None:
        self._repository.reset()

    def start_thread(self, *, requester_id: str, participant_id: str, subject_ref: str | None) -> ThreadRecord:
        thread = self._repository.create_thread(participant_ids=(requester_id, participant_id), subject_ref=subject_ref)
        logger.info("thread %s ready for %s and %s", thread.thread_id, requester_id, participant_id)
        return thread

    def participants(self, thread_id: str, *, viewer_id: str) -> tuple[str, str]:
        participants = self._repository.participants(thread_id)
        if viewer_id not in participants:
            # Non-participants see the same answer as for a missing thread.
            raise NotFoundError(f"thread not found: {thread_id}")
        return participants

    def gate_mode(self, thread_id: str, *, viewer_id: str) -> GateMode:
        self.participants(thread_id, viewer_id=viewer_id)
        return AccessGate(repository=self._repository, oracle=self._oracle).mode(thread_id, viewer_id)

    def history(self, thread_id: str, *, viewer_id: str) -> list[MessageRecord]:
        self.participants(thread_id, viewer_id=viewer_id)
        return self._repository.history(thread_id, limit=self._settings.history_limit)

    def available_presets(self, thread_id: str, *, viewer_id: str) -> list[str]:
        if self.gate_mode(thread_id, viewer_id=viewer_id) == "unlocked":
            return []
        return available_presets(
            self._repository.history(thread_id),
            sender_id=viewer_id,
            catalog=self._settings.preset_questions,
        )

    def thread_detail(self, thread_id: str, *, viewer_id: str) -> ThreadDetail:
        participants = self.participants(thread_id, viewer_id=viewer_id)
        thread = self._repository.get_thread(thread_id)
        if thread is None:
            raise NotFoundError(f"thread not found: {thread_id}")
        mode = AccessGate(repository=self._repository, oracle=self._oracle).mode(thread_id, viewer_id)
        messages = self._repository.history(thread_id, limit=self._settings.history_limit)
        presets: list[str] = []
        if mode == "restricted":
            presets = available_presets(
                self._repository.history(thread_id),
                sender_id=viewer_id,
                catalog=self._settings.preset_questions,
            )
        return ThreadDetail(
            thread=thread,
            participant_ids=participants,
            mode=mode,
            available_presets=presets,
            messages=messages,
        )

    def post_message(self, *, thread_id: str, sender_id: str, content: str) -> PostedMessage:
        if not content.strip():
            raise ValidationError("message content cannot be blank")
        mode = self.gate_mode(thread_id, viewer_id=sender_id)
        if mode == "restricted" and self._settings.gate_server_enforcement:
            check_restricted_send(
                content,
                sender_id=sender_id,
                history=self._repository.history(thread_id),
                catalog=self._settings.preset_questions,
            )

        message = self._repository.append(thread_id=thread_id, sender_id=sender_id, content=content)
        delivered = self._feed.publish(message)
        advisory = classify(message.content) if mode == "unlocked" else ContactAdvisory(flagged=False, advisory=None)
        if advisory.flagged:
            logger.info(
                "contact advisory on message %s in thread %s: %s",
                message.message_id,
                thread_id,
                ",".join(advisory.reasons),
            )
        logger.debug("message %s fanned out to %d subscriber(s)", message.message_id, delivered)
        return PostedMessage(message=message, mode=mode, advisory=advisory)

    def inbox(self, user_id: str) -> list[ThreadSummary]:
        return self._aggregator.inbox(user_id)

    def open_session(self, *, thread_id: str, viewer_id: str) -> ConversationSession:
        return ConversationSession(
            thread_id=thread_id,
            viewer_id=viewer_id,
            repository=self._repository,
            writer=ThreadStoreWriter(self),
            feed=self._feed,
            oracle=self._oracle,
            settings=self._settings,
        )


class ThreadStoreWriter:
    """Async message writer that routes through the service's write path."""

    def __init__(self, service: ConversationService) -> None:
        self._service = service

    async def append(self, *, thread_id: str, sender_id: str, content: str) -> MessageRecord:
        posted = await asyncio.to_thread(
            self._service.post_message,
            thread_id=thread_id,
            sender_id=sender_id,
            content=content,
        )
        return posted.message
