"""Errors raised by core admin operations, and the admin check they share."""

from __future__ import annotations

from choreminder.data.models import Actor


class AuthorizationError(PermissionError):
    """Raised when an actor may not administer the targeted household."""


class NotFoundError(LookupError):
    """Raised when an admin operation targets an unknown record."""


def require_admin(actor: Actor, household_id: str) -> None:
    """Only a household's own admins may change its schedules and rules."""
    if not actor.is_admin or actor.household_id != household_id:
        raise AuthorizationError(
            f"Member {actor.member_id} is not an admin of household {household_id}"
        )
