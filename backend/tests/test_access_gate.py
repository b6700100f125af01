from __future__ import annotations

import pytest

from booking_chat.access_gate import (
    AccessGate,
    InMemoryTransactionOracle,
    available_presets,
    check_restricted_send,
    match_preset,
)
from booking_chat.config import DEFAULT_PRESET_QUESTIONS
from booking_chat.errors import GateError, NotFoundError, ValidationError
from booking_chat.thread_store import InMemoryThreadRepository


class _SequenceOracle:
    def __init__(self, *answers: bool) -> None:
        self._answers = list(answers)
        self.calls = 0

    def has_confirmed_transaction(self, participant_ids: tuple[str, str], subject_ref: str | None) -> bool:
        answer = self._answers[min(self.calls, len(self._answers) - 1)]
        self.calls += 1
        return answer


class _BrokenOracle:
    def has_confirmed_transaction(self, participant_ids: tuple[str, str], subject_ref: str | None) -> bool:
        raise ConnectionError("bookings service unreachable")


def _thread() -> tuple[InMemoryThreadRepository, str]:
    repository = InMemoryThreadRepository()
    thread = repository.create_thread(participant_ids=("client-1", "trainer-1"), subject_ref="listing-1")
    return repository, thread.thread_id


def test_gate_is_restricted_until_a_booking_is_confirmed() -> None:
    repository, thread_id = _thread()
    oracle = InMemoryTransactionOracle()
    gate = AccessGate(repository=repository, oracle=oracle)

    assert gate.mode(thread_id, "client-1") == "restricted"
    oracle.confirm("trainer-1", "client-1")
    assert gate.mode(thread_id, "client-1") == "unlocked"


def test_unlock_is_sticky_for_the_gate_lifetime() -> None:
    repository, thread_id = _thread()
    oracle = _SequenceOracle(False, True, False, False)
    gate = AccessGate(repository=repository, oracle=oracle)

    observed = [gate.refresh(thread_id, "client-1") for _ in range(4)]
    assert observed == ["restricted", "unlocked", "unlocked", "unlocked"]
    assert gate.mode(thread_id, "client-1") == "unlocked"


def test_mode_does_not_requery_once_unlocked() -> None:
    repository, thread_id = _thread()
    oracle = InMemoryTransactionOracle()
    oracle.confirm("client-1", "trainer-1")
    gate = AccessGate(repository=repository, oracle=oracle)

    gate.mode(thread_id, "client-1")
    gate.mode(thread_id, "client-1")
    assert oracle.calls == 1


def test_explicit_relock_is_honoured() -> None:
    repository, thread_id = _thread()
    oracle = InMemoryTransactionOracle()
    oracle.confirm("client-1", "trainer-1")
    gate = AccessGate(repository=repository, oracle=oracle)
    assert gate.mode(thread_id, "client-1") == "unlocked"

    oracle.revoke("client-1", "trainer-1")
    assert gate.refresh(thread_id, "client-1") == "unlocked"
    assert gate.refresh(thread_id, "client-1", allow_relock=True) == "restricted"


def test_oracle_failure_reads_as_unconfirmed_but_never_relocks() -> None:
    repository, thread_id = _thread()
    assert AccessGate(repository=repository, oracle=_BrokenOracle()).mode(thread_id, "client-1") == "restricted"

    gate = AccessGate(repository=repository, oracle=_SequenceOracle(True))
    assert gate.mode(thread_id, "client-1") == "unlocked"
    gate._oracle = _BrokenOracle()
    assert gate.refresh(thread_id, "client-1", allow_relock=True) == "unlocked"


def test_gate_rejects_unknown_thread_and_outsiders() -> None:
    repository, thread_id = _thread()
    gate = AccessGate(repository=repository, oracle=InMemoryTransactionOracle())

    with pytest.raises(NotFoundError):
        gate.mode("thread_missing", "client-1")
    with pytest.raises(NotFoundError, match="not a participant"):
        gate.mode(thread_id, "stranger")


def test_restricted_send_accepts_only_unsent_presets() -> None:
    repository, thread_id = _thread()
    question = DEFAULT_PRESET_QUESTIONS[2]

    assert check_restricted_send(f" {question} ", sender_id="client-1", history=[]) == question
    with pytest.raises(GateError, match="free-text"):
        check_restricted_send("Is this suitable for beginners", sender_id="client-1", history=[])
    with pytest.raises(ValidationError):
        check_restricted_send("  ", sender_id="client-1", history=[])

    sent = repository.append(thread_id=thread_id, sender_id="client-1", content=question)
    with pytest.raises(GateError, match="already sent"):
        check_restricted_send(question, sender_id="client-1", history=[sent])
    assert check_restricted_send(question, sender_id="trainer-1", history=[sent]) == question


def test_available_presets_shrink_as_questions_are_asked() -> None:
    repository, thread_id = _thread()
    history = [
        repository.append(thread_id=thread_id, sender_id="client-1", content=DEFAULT_PRESET_QUESTIONS[0]),
        repository.append(thread_id=thread_id, sender_id="trainer-1", content=DEFAULT_PRESET_QUESTIONS[1]),
    ]

    remaining = available_presets(history, sender_id="client-1")
    assert remaining == list(DEFAULT_PRESET_QUESTIONS[1:])
    assert len(available_presets(history, sender_id="trainer-1")) == len(DEFAULT_PRESET_QUESTIONS) - 1


def test_match_preset_uses_the_given_catalog() -> None:
    catalog = ("Do you have parking?",)
    assert match_preset("Do you have parking?", catalog) == "Do you have parking?"
    assert match_preset(DEFAULT_PRESET_QUESTIONS[0], catalog) is None


def test_recorded_unlock_is_shared_by_every_gate_without_requerying() -> None:
    repository, thread_id = _thread()
    oracle = InMemoryTransactionOracle()
    oracle.confirm("client-1", "trainer-1")
    assert AccessGate(repository=repository, oracle=oracle).mode(thread_id, "client-1") == "unlocked"
    assert repository.get_thread(thread_id).unlocked_at is not None

    oracle.revoke("client-1", "trainer-1")
    calls = oracle.calls
    assert AccessGate(repository=repository, oracle=oracle).mode(thread_id, "trainer-1") == "unlocked"
    assert AccessGate(repository=repository, oracle=_BrokenOracle()).mode(thread_id, "client-1") == "unlocked"
    assert oracle.calls == calls


def test_explicit_relock_clears_the_recorded_unlock() -> None:
    repository, thread_id = _thread()
    oracle = InMemoryTransactionOracle()
    oracle.confirm("client-1", "trainer-1")
    AccessGate(repository=repository, oracle=oracle).mode(thread_id, "client-1")

    oracle.revoke("client-1", "trainer-1")
    gate = AccessGate(repository=repository, oracle=oracle)
    assert gate.refresh(thread_id, "client-1", allow_relock=True) == "restricted"
    assert repository.get_thread(thread_id).unlocked_at is None
    assert AccessGate(repository=repository, oracle=oracle).mode(thread_id, "trainer-1") == "restricted"
