from __future__ import annotations

from datetime import datetime, timedelta, timezone

from booking_chat.identity import (
    InMemoryCatalogDirectory,
    InMemoryIdentityDirectory,
    ProfileRecord,
    resolve_identities,
)
from booking_chat.inbox import ThreadAggregator
from booking_chat.thread_store import InMemoryThreadRepository

BASE = datetime(2026, 10, 19, 8, 0, 0, tzinfo=timezone.utc)


class _StepClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class _CountingRepository:
    def __init__(self, inner: InMemoryThreadRepository) -> None:
        self._inner = inner
        self.calls: list[str] = []

    def __getattr__(self, name: str):
        attribute = getattr(self._inner, name)
        if not callable(attribute):
            return attribute

        def _recorded(*args, **kwargs):
            self.calls.append(name)
            return attribute(*args, **kwargs)

        return _recorded


def test_inbox_uses_a_fixed_number_of_lookups() -> None:
    clock = _StepClock(BASE)
    inner = InMemoryThreadRepository(clock=clock)
    identities = InMemoryIdentityDirectory()
    catalog = InMemoryCatalogDirectory()
    for index in range(50):
        partner_id = f"partner-{index:02d}"
        if index % 2 == 0:
            identities.add_business(ProfileRecord(user_id=partner_id, display_name=f"Studio {index}"))
        elif index % 3 == 0:
            identities.add_individual(ProfileRecord(user_id=partner_id, display_name=f"Coach {index}"))
        catalog.add_label(f"listing-{index:02d}", f"Session {index}")
        clock.advance(1)
        thread = inner.create_thread(participant_ids=("client-1", partner_id), subject_ref=f"listing-{index:02d}")
        if index % 5 == 0:
            inner.append(thread_id=thread.thread_id, sender_id=partner_id, content=f"Welcome {index}")

    repository = _CountingRepository(inner)
    aggregator = ThreadAggregator(repository=repository, identities=identities, catalog=catalog)
    identities.lookup_calls = 0

    summaries = aggregator.inbox("client-1")

    assert len(summaries) == 50
    assert repository.calls == ["list_threads_for", "participants_for_threads", "last_messages_for_threads"]
    assert identities.lookup_calls == 2
    assert catalog.lookup_calls == 1
    kinds = {summary.other_party.kind for summary in summaries}
    assert kinds == {"business", "individual", "unknown"}
    assert all(summary.subject_label and summary.subject_label.startswith("Session ") for summary in summaries)


def test_inbox_sorts_by_latest_activity() -> None:
    clock = _StepClock(BASE)
    repository = InMemoryThreadRepository(clock=clock)
    quiet = repository.create_thread(participant_ids=("client-1", "trainer-1"), subject_ref=None)
    clock.advance(60)
    older = repository.create_thread(participant_ids=("client-1", "trainer-2"), subject_ref=None)
    clock.advance(60)
    newest = repository.create_thread(participant_ids=("client-1", "trainer-3"), subject_ref=None)
    clock.advance(60)
    repository.append(thread_id=quiet.thread_id, sender_id="trainer-1", content="Any questions?")

    summaries = ThreadAggregator(repository=repository, identities=InMemoryIdentityDirectory()).inbox("client-1")

    assert [summary.thread_id for summary in summaries] == [quiet.thread_id, newest.thread_id, older.thread_id]
    assert summaries[0].last_message_preview == "Any questions?"
    assert summaries[1].last_message_preview is None
    assert summaries[1].activity_at == summaries[1].created_at


def test_inbox_preview_is_collapsed_and_truncated() -> None:
    repository = InMemoryThreadRepository()
    thread = repository.create_thread(participant_ids=("client-1", "trainer-1"), subject_ref=None)
    repository.append(thread_id=thread.thread_id, sender_id="trainer-1", content="Hello    there,\nhow are you")

    summaries = ThreadAggregator(
        repository=repository,
        identities=InMemoryIdentityDirectory(),
        preview_length=10,
    ).inbox("client-1")

    assert summaries[0].last_message_preview == "Hello t..."


def test_inbox_is_empty_without_lookups_for_new_users() -> None:
    identities = InMemoryIdentityDirectory()
    assert ThreadAggregator(repository=InMemoryThreadRepository(), identities=identities).inbox("nobody") == []
    assert identities.lookup_calls == 0


def test_business_profile_wins_over_individual_profile() -> None:
    directory = InMemoryIdentityDirectory(
        business=[ProfileRecord(user_id="dual", display_name="Dual Fitness", avatar_url="https://cdn.example/d.png")],
        individual=[
            ProfileRecord(user_id="dual", display_name="Dana"),
            ProfileRecord(user_id="plain", display_name=None),
        ],
    )

    resolved = resolve_identities(["dual", "plain", "ghost", "dual"], directory)

    assert resolved["dual"].kind == "business"
    assert resolved["dual"].display_name == "Dual Fitness"
    assert resolved["dual"].avatar_url == "https://cdn.example/d.png"
    assert resolved["plain"].kind == "individual"
    assert resolved["plain"].display_name == "User"
    assert resolved["ghost"].kind == "unknown"
    assert resolved["ghost"].display_name == "Chat"
    assert directory.lookup_calls == 2


def test_individual_lookup_is_skipped_when_everyone_is_a_business() -> None:
    directory = InMemoryIdentityDirectory(business=[ProfileRecord(user_id="studio-1", display_name="Studio One")])
    resolve_identities(["studio-1"], directory)
    assert directory.lookup_calls == 1
