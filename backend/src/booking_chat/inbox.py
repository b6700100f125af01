from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from .identity import CatalogDirectory, Identity, IdentityDirectory, UnknownIdentity, resolve_identities
from .thread_store import ThreadRepository


@dataclass(frozen=True)
class ThreadSummary:
    thread_id: str
    subject_ref: str | None
    subject_label: str | None
    other_party: Identity
    last_message_preview: str | None
    last_message_at: datetime | None
    created_at: datetime

    @property
    def activity_at(self) -> datetime:
        return self.last_message_at or self.created_at


def _preview(body_text: str, *, limit: int = 120) -> str:
    clean = " ".join(body_text.split())
    if len(clean) <= limit:
        return clean
    return clean[: limit - 3] + "..."


class ThreadAggregator:
    """Builds a user's inbox with a fixed number of bulk lookups per call."""

    def __init__(
        self,
        *,
        repository: ThreadRepository,
        identities: IdentityDirectory,
        catalog: CatalogDirectory | None = None,
        preview_length: int = 120,
    ) -> None:
        self._repository = repository
        self._identities = identities
        self._catalog = catalog
        self._preview_length = preview_length

    def inbox(self, user_id: str) -> list[ThreadSummary]:
        threads = self._repository.list_threads_for(user_id)
        if not threads:
            return []

        thread_ids = [thread.thread_id for thread in threads]
        participants = self._repository.participants_for_threads(thread_ids)
        last_messages = self._repository.last_messages_for_threads(thread_ids)

        other_party_ids: dict[str, str] = {}
        for thread_id, pair in participants.items():
            others = [participant for participant in pair if participant != user_id]
            if others:
                other_party_ids[thread_id] = others[0]
        identities = resolve_identities(other_party_ids.values(), self._identities)

        labels: dict[str, str] = {}
        subject_refs = sorted({thread.subject_ref for thread in threads if thread.subject_ref})
        if subject_refs and self._catalog is not None:
            labels = self._catalog.subject_labels(subject_refs)

        summaries: list[ThreadSummary] = []
        for thread in threads:
            other_id = other_party_ids.get(thread.thread_id)
            last = last_messages.get(thread.thread_id)
            summaries.append(
                ThreadSummary(
                    thread_id=thread.thread_id,
                    subject_ref=thread.subject_ref,
                    subject_label=labels.get(thread.subject_ref) if thread.subject_ref else None,
                    other_party=identities.get(other_id, UnknownIdentity(user_id=other_id))
                    if other_id
                    else UnknownIdentity(),
                    last_message_preview=_preview(last.content, limit=self._preview_length) if last else None,
                    last_message_at=last.sent_at if last else None,
                    created_at=thread.created_at,
                )
            )

        summaries.sort(key=lambda summary: summary.activity_at, reverse=True)
        return summaries
