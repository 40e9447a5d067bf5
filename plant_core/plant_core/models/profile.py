"""Profile role and reference models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class ProfileRole(str, Enum):
    """Role carried by a profile; governs dashboard and API capabilities."""

    MEMBER = "member"
    CHAPTER_LEADER = "chapter_leader"
    ADMINISTRATOR = "administrator"


class ProfileRef(BaseModel):
    """Minimal profile projection used when a row references another member.

    Joined queries always return this shape (or ``None``) so callers never
    have to unwrap list-vs-object join results.
    """

    id: str
    full_name: str = Field(default="")
    business_name: str | None = None
    email: str | None = None
