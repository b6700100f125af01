from __future__ import annotations

import re
from dataclasses import dataclass

CONTACT_ADVISORY = (
    "For your safety and support, we recommend keeping bookings and payments in the app. "
    "In-app bookings include verified partners, reviews, and payment protection."
)

# Seven or more digits; separators between digits and a leading "+" or "(" are tolerated.
_PHONE_RE = re.compile(r"\+?\(?\d(?:[\s\-.()]{0,3}\d){6,}")
_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_HANDLE_RE = re.compile(r"(?<![\w.@])@[A-Za-z0-9_.]{3,}")
_URL_RE = re.compile(r"(?:https?://|www\.)\S+", re.IGNORECASE)

_CHANNEL_KEYWORDS = (
    "whatsapp",
    "telegram",
    "viber",
    "instagram",
    "insta",
    "facebook",
    "messenger",
    "tiktok",
    "snapchat",
    "wechat",
    "skype",
    "call me",
    "text me",
    "dm me",
    "my number",
    "phone number",
)
_CHANNEL_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(keyword) for keyword in _CHANNEL_KEYWORDS) + r")\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ContactAdvisory:
    flagged: bool
    advisory: str | None
    reasons: tuple[str, ...] = ()


def detect_contact_reasons(text: str) -> tuple[str, ...]:
    reasons: list[str] = []
    if _PHONE_RE.search(text):
        reasons.append("phone")
    if _EMAIL_RE.search(text):
        reasons.append("email")
    has_channel_keyword = _CHANNEL_RE.search(text) is not None
    if has_channel_keyword:
        reasons.append("channel_keyword")
        if _HANDLE_RE.search(text):
            reasons.append("handle")
    if _URL_RE.search(text):
        reasons.append("url")
    return tuple(reasons)


def classify(text: str) -> ContactAdvisory:
    """Flag text that appears to share off-platform contact details.

    Advisory only: the caller sends ``text`` unchanged whatever the outcome.
    """
    reasons = detect_contact_reasons(text)
    if not reasons:
        return ContactAdvisory(flagged=False, advisory=None)
    return ContactAdvisory(flagged=True, advisory=CONTACT_ADVISORY, reasons=reasons)
