# Overview: User directory lookups for actors and assignees.

from __future__ import annotations

from ..errors import NotFoundError
from ..extensions import db
from ..models import User


def user_exists(user_id: int | None) -> bool:
    if user_id is None:
        return False
    return (
        db.session.query(User.id)
        .filter(User.id == user_id, User.is_active.is_(True))
        .first()
        is not None
    )


def require_user(user_id: int | None, *, role: str = "User") -> int:
    """Return user_id when it names an active user, else raise NotFoundError."""
    if not user_exists(user_id):
        raise NotFoundError(f"{role} {user_id} not found", details={"user_id": user_id})
    return user_id
