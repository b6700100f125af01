from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Literal, Protocol, Union

UNKNOWN_DISPLAY_NAME = "Chat"
INDIVIDUAL_FALLBACK_NAME = "User"


@dataclass(frozen=True)
class ProfileRecord:
    user_id: str
    display_name: str | None
    avatar_url: str | None = None


@dataclass(frozen=True)
class BusinessIdentity:
    profile: ProfileRecord
    kind: Literal["business"] = "business"

    @property
    def user_id(self) -> str:
        return self.profile.user_id

    @property
    def display_name(self) -> str:
        return self.profile.display_name or UNKNOWN_DISPLAY_NAME

    @property
    def avatar_url(self) -> str | None:
        return self.profile.avatar_url


@dataclass(frozen=True)
class IndividualIdentity:
    profile: ProfileRecord
    kind: Literal["individual"] = "individual"

    @property
    def user_id(self) -> str:
        return self.profile.user_id

    @property
    def display_name(self) -> str:
        return self.profile.display_name or INDIVIDUAL_FALLBACK_NAME

    @property
    def avatar_url(self) -> str | None:
        return self.profile.avatar_url


@dataclass(frozen=True)
class UnknownIdentity:
    user_id: str | None = None
    kind: Literal["unknown"] = "unknown"

    @property
    def display_name(self) -> str:
        return UNKNOWN_DISPLAY_NAME

    @property
    def avatar_url(self) -> str | None:
        return None


Identity = Union[BusinessIdentity, IndividualIdentity, UnknownIdentity]


class IdentityDirectory(Protocol):
    def business_profiles(self, user_ids: Iterable[str]) -> dict[str, ProfileRecord]: ...

    def individual_profiles(self, user_ids: Iterable[str]) -> dict[str, ProfileRecord]: ...


class CatalogDirectory(Protocol):
    def subject_labels(self, subject_refs: Iterable[str]) -> dict[str, str]: ...


class InMemoryIdentityDirectory:
    def __init__(
        self,
        *,
        business: Iterable[ProfileRecord] = (),
        individual: Iterable[ProfileRecord] = (),
    ) -> None:
        self._business = {profile.user_id: profile for profile in business}
        self._individual = {profile.user_id: profile for profile in individual}
        self.lookup_calls = 0

    def reset(self) -> None:
        self._business.clear()
        self._individual.clear()
        self.lookup_calls = 0

    def add_business(self, profile: ProfileRecord) -> None:
        self._business[profile.user_id] = profile

    def add_individual(self, profile: ProfileRecord) -> None:
        self._individual[profile.user_id] = profile

    def business_profiles(self, user_ids: Iterable[str]) -> dict[str, ProfileRecord]:
        self.lookup_calls += 1
        return {user_id: self._business[user_id] for user_id in user_ids if user_id in self._business}

    def individual_profiles(self, user_ids: Iterable[str]) -> dict[str, ProfileRecord]:
        self.lookup_calls += 1
        return {user_id: self._individual[user_id] for user_id in user_ids if user_id in self._individual}


class InMemoryCatalogDirectory:
    def __init__(self, labels: dict[str, str] | None = None) -> None:
        self._labels = dict(labels or {})
        self.lookup_calls = 0

    def reset(self) -> None:
        self._labels.clear()
        self.lookup_calls = 0

    def add_label(self, subject_ref: str, label: str) -> None:
        self._labels[subject_ref] = label

    def subject_labels(self, subject_refs: Iterable[str]) -> dict[str, str]:
        self.lookup_calls += 1
        return {ref: self._labels[ref] for ref in subject_refs if ref in self._labels}


def resolve_identities(user_ids: Iterable[str], directory: IdentityDirectory) -> dict[str, Identity]:
    """Resolve each user against the business namespace, then the individual one.

    Issues at most two batched directory calls regardless of how many ids are passed.
    """
    pending = sorted(set(user_ids))
    resolved: dict[str, Identity] = {}
    if not pending:
        return resolved

    for user_id, profile in directory.business_profiles(pending).items():
        resolved[user_id] = BusinessIdentity(profile=profile)

    remaining = [user_id for user_id in pending if user_id not in resolved]
    if remaining:
        for user_id, profile in directory.individual_profiles(remaining).items():
            resolved[user_id] = IndividualIdentity(profile=profile)

    for user_id in pending:
        resolved.setdefault(user_id, UnknownIdentity(user_id=user_id))
    return resolved
