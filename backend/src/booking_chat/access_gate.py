from __future__ import annotations

import logging
from threading import Lock
from typing import Iterable, Protocol, Sequence

from .config import DEFAULT_PRESET_QUESTIONS
from .errors import GateError, NotFoundError, TransientWriteError, ValidationError
from .models import GateMode
from .thread_store import ThreadRepository

logger = logging.getLogger(__name__)


class SentMessage(Protocol):
    @property
    def sender_id(self) -> str: ...

    @property
    def content(self) -> str: ...


class TransactionStatusOracle(Protocol):
    def has_confirmed_transaction(self, participant_ids: tuple[str, str], subject_ref: str | None) -> bool: ...


class InMemoryTransactionOracle:
    """Confirmed-transaction lookup backed by a set of participant pairs."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._confirmed: set[frozenset[str]] = set()
        self.calls = 0

    def reset(self) -> None:
        with self._lock:
            self._confirmed.clear()
            self.calls = 0

    def confirm(self, first_user_id: str, second_user_id: str) -> None:
        with self._lock:
            self._confirmed.add(frozenset({first_user_id, second_user_id}))

    def revoke(self, first_user_id: str, second_user_id: str) -> None:
        with self._lock:
            self._confirmed.discard(frozenset({first_user_id, second_user_id}))

    def has_confirmed_transaction(self, participant_ids: tuple[str, str], subject_ref: str | None) -> bool:
        with self._lock:
            self.calls += 1
            return frozenset(participant_ids) in self._confirmed


def match_preset(text: str, catalog: Sequence[str] = DEFAULT_PRESET_QUESTIONS) -> str | None:
    normalized = text.strip()
    for question in catalog:
        if normalized == question:
            return question
    return None


def sent_presets(
    history: Iterable[SentMessage],
    *,
    sender_id: str,
    catalog: Sequence[str] = DEFAULT_PRESET_QUESTIONS,
) -> set[str]:
    sent: set[str] = set()
    for message in history:
        if message.sender_id != sender_id:
            continue
        question = match_preset(message.content, catalog)
        if question is not None:
            sent.add(question)
    return sent


def available_presets(
    history: Iterable[SentMessage],
    *,
    sender_id: str,
    catalog: Sequence[str] = DEFAULT_PRESET_QUESTIONS,
) -> list[str]:
    sent = sent_presets(history, sender_id=sender_id, catalog=catalog)
    return [question for question in catalog if question not in sent]


def check_restricted_send(
    content: str,
    *,
    sender_id: str,
    history: Iterable[SentMessage],
    catalog: Sequence[str] = DEFAULT_PRESET_QUESTIONS,
) -> str:
    """Return the preset question ``content`` names, or raise if it is not sendable."""
    if not content.strip():
        raise ValidationError("message content cannot be blank")
    question = match_preset(content, catalog)
    if question is None:
        raise GateError("free-text messages unlock after the booking is confirmed")
    if question in sent_presets(history, sender_id=sender_id, catalog=catalog):
        raise GateError(f"preset question already sent: {question}")
    return question


class AccessGate:
    """Computes a thread's mode for one viewer.

    The first confirmed read is recorded on the thread itself, so every gate
    (client sessions and the server write path alike) keeps the thread
    unlocked afterwards without asking the oracle again. Only
    ``refresh(..., allow_relock=True)`` with a healthy oracle that no longer
    confirms the booking clears that record.
    """

    def __init__(self, *, repository: ThreadRepository, oracle: TransactionStatusOracle) -> None:
        self._repository = repository
        self._oracle = oracle
        self._unlocked: set[str] = set()

    def mode(self, thread_id: str, viewer_id: str) -> GateMode:
        if thread_id in self._unlocked:
            return "unlocked"
        return self.refresh(thread_id, viewer_id)

    def refresh(self, thread_id: str, viewer_id: str, *, allow_relock: bool = False) -> GateMode:
        thread = self._repository.get_thread(thread_id)
        if thread is None:
            raise NotFoundError(f"thread not found: {thread_id}")
        participants = self._repository.participants(thread_id)
        if viewer_id not in participants:
            raise NotFoundError(f"viewer {viewer_id} is not a participant of {thread_id}")

        if thread.unlocked_at is not None and not allow_relock:
            self._unlocked.add(thread_id)
            return "unlocked"

        oracle_failed = False
        try:
            confirmed = bool(self._oracle.has_confirmed_transaction(participants, thread.subject_ref))
        except Exception:
            logger.warning("transaction oracle failed for thread %s; treating as unconfirmed", thread_id, exc_info=True)
            confirmed = False
            oracle_failed = True

        if confirmed:
            if thread.unlocked_at is None:
                logger.info("thread %s unlocked for viewer %s", thread_id, viewer_id)
                self._record_unlock(thread_id)
            self._unlocked.add(thread_id)
            return "unlocked"
        if thread.unlocked_at is not None and not oracle_failed:
            # Only reachable with allow_relock.
            logger.info("thread %s relocked for viewer %s", thread_id, viewer_id)
            self._repository.clear_unlock(thread_id)
            self._unlocked.discard(thread_id)
        elif allow_relock and not oracle_failed:
            self._unlocked.discard(thread_id)
        elif thread.unlocked_at is not None:
            self._unlocked.add(thread_id)
        return "unlocked" if thread_id in self._unlocked else "restricted"

    def _record_unlock(self, thread_id: str) -> None:
        try:
            self._repository.record_unlock(thread_id)
        except TransientWriteError as exc:
            # The next confirmed read records it; this read still unlocks.
            logger.warning("could not record unlock for thread %s: %s", thread_id, exc)
