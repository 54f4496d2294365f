"""Error kinds surfaced by the membership engine to its callers."""
from __future__ import annotations


class MembershipError(Exception):
    """Base class for errors that reach the caller verbatim."""

    kind = "membership_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind


class Unauthorized(MembershipError):
    """No identity, or the identity lacks permission for the action."""

    kind = "unauthorized"

    def __init__(self, message: str = "", *, authenticated: bool = True) -> None:
        super().__init__(message)
        self.authenticated = authenticated


class Forbidden(MembershipError):
    """The acting user does not own the record they are touching."""

    kind = "forbidden"


class NotFound(MembershipError):
    kind = "not_found"


class AlreadyMember(MembershipError):
    kind = "already_member"


class SelfRemoval(MembershipError):
    """The sole owner tried to remove themselves from their own entity."""

    kind = "self_removal"


class InvalidRole(MembershipError):
    kind = "invalid_role"
