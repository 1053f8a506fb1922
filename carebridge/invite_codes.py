"""Clinician invite codes."""

from __future__ import annotations

import secrets

from sqlalchemy import select
from sqlalchemy.orm import Session

from carebridge.db.models import Clinician

# Ambiguous glyphs (O, 0, I, 1) are left out so codes survive being read aloud.
INVITE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
INVITE_CODE_LENGTH = 8


def generate_invite_code(length: int = INVITE_CODE_LENGTH) -> str:
    return "".join(secrets.choice(INVITE_ALPHABET) for _ in range(length))


def unique_invite_code(session: Session, attempts: int = 20) -> str:
    """Return a code no clinician currently holds."""

    for _ in range(attempts):
        code = generate_invite_code()
        taken = session.execute(select(Clinician.id).where(Clinician.invite_code == code)).first()
        if taken is None:
            return code
    raise RuntimeError("Unable to allocate a unique invite code")


def normalise_invite_code(value: str | None) -> str:
    return (value or "").strip().upper()


__all__ = [
    "INVITE_ALPHABET",
    "INVITE_CODE_LENGTH",
    "generate_invite_code",
    "normalise_invite_code",
    "unique_invite_code",
]
