# identity.py
# -----------------------------------------------------------------------------
# Student identity: name-derived pseudonymous keys (pre-auth sessions) and
# authenticated user ids. Callers only use resolve_progress_key().
# -----------------------------------------------------------------------------
from typing import Optional

from flask import g, has_request_context, session

SESSION_NAME_KEY = "student_name"


def _to_int32(n: int) -> int:
    n &= 0xFFFFFFFF
    return n - 0x100000000 if n & 0x80000000 else n


def derive_id(name: str) -> str:
    """
    Deterministic UUID-shaped key for a free-text name.

    31-based rolling hash over UTF-16 code units, wrapped to a signed 32-bit
    int, absolute value as 32 zero-padded hex digits grouped 8-4-4-4-12.
    Not a credential: only a lookup key for a name that is already trusted.
    """
    acc = 0
    raw = (name or "").encode("utf-16-le")
    for i in range(0, len(raw), 2):
        code = raw[i] | (raw[i + 1] << 8)
        acc = _to_int32(acc * 31 + code)
    digits = format(abs(acc), "x").zfill(32)
    return "-".join((digits[0:8], digits[8:12], digits[12:16], digits[16:20], digits[20:32]))


class StudentIdentity:
    """Anything that can name the progress rows of one student."""

    display_name: str = ""

    def resolve_progress_key(self) -> str:
        raise NotImplementedError

    def __eq__(self, other) -> bool:
        if not isinstance(other, StudentIdentity):
            return NotImplemented
        return self.resolve_progress_key() == other.resolve_progress_key()

    def __hash__(self) -> int:
        return hash(self.resolve_progress_key())


class NameDerivedIdentity(StudentIdentity):
    def __init__(self, name: str):
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValueError("student name must not be blank")
        self.display_name = cleaned
        self._key = derive_id(cleaned)

    def resolve_progress_key(self) -> str:
        return self._key

    def __repr__(self) -> str:
        return f"NameDerivedIdentity({self.display_name!r})"


class AuthenticatedIdentity(StudentIdentity):
    def __init__(self, user_id, email: Optional[str] = None):
        if user_id is None or str(user_id).strip() == "":
            raise ValueError("authenticated identity needs a user id")
        self.user_id = str(user_id)
        self.email = (email or "").strip().lower() or None
        self.display_name = self.email or self.user_id

    def resolve_progress_key(self) -> str:
        return self.user_id

    def __repr__(self) -> str:
        return f"AuthenticatedIdentity({self.user_id!r})"


def current_identity() -> Optional[StudentIdentity]:
    """Authenticated user (g.user_id) wins over a name-only session."""
    if not has_request_context():
        return None
    user_id = getattr(g, "user_id", None)
    if user_id:
        return AuthenticatedIdentity(user_id, getattr(g, "user_email", None))
    name = (session.get(SESSION_NAME_KEY) or "").strip()
    if name:
        return NameDerivedIdentity(name)
    return None


__all__ = [
    "derive_id",
    "StudentIdentity",
    "NameDerivedIdentity",
    "AuthenticatedIdentity",
    "current_identity",
    "SESSION_NAME_KEY",
]
