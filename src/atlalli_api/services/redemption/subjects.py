"""Identity classification of token subjects."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union
from urllib.parse import quote


@dataclass(frozen=True)
class MemberSubject:
    """Opaque (hashed) member identifier; deduplicated per promotion and venue."""

    member_id: str

    @property
    def subject_id(self) -> str:
        return self.member_id


@dataclass(frozen=True)
class GuestSubject:
    """Guest identified by email; limited to one redemption across the system."""

    email: str

    @property
    def subject_id(self) -> str:
        return self.email

    @property
    def normalized_email(self) -> str:
        return self.email.strip().lower()


Subject = Union[MemberSubject, GuestSubject]


def classify_subject(subject_id: str) -> Subject:
    if "@" in subject_id:
        return GuestSubject(email=subject_id)
    return MemberSubject(member_id=subject_id)


def member_dedup_key(promotion_id: str, venue_id: str, member_id: str) -> str:
    # parts are percent-encoded so ":" inside an id cannot shift a boundary
    parts = (quote(part, safe="") for part in (promotion_id, venue_id, member_id))
    return "member:" + ":".join(parts)


def guest_dedup_key(guest_email: str) -> str:
    return f"guest:{guest_email.strip().lower()}"


__all__ = [
    "GuestSubject",
    "MemberSubject",
    "Subject",
    "classify_subject",
    "guest_dedup_key",
    "member_dedup_key",
]
