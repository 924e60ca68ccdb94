# Overview: Staff account management; listing, profile edits, activation and password changes.

"""
User Management Service

Admins manage every account. Other staff can read and edit only their own
profile, and never their own role or status. Deactivating an account or
changing a password revokes the affected sessions in the same transaction.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import or_

from ..errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Sale, User
from ..models.auth import ROLES
from ..validation import ModelValidationPolicy
from . import auth_service, session_service
from .concurrency import lock_for_update, run_in_transaction


USER_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={"username", "email", "first_name", "last_name", "role"},
    required_on_create={"username", "email"},
)
USER_ADMIN_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields={"username", "email", "first_name", "last_name", "role", "is_active"},
)
PROFILE_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields={"username", "email", "first_name", "last_name"},
)


def _is_admin(user: User) -> bool:
    return user.role == "ADMIN"


def _check_identifiers(patch: dict, user_id: int) -> None:
    if "username" in patch:
        taken = db.session.query(User.id).filter(User.username == patch["username"], User.id != user_id).first()
        if taken:
            raise ConflictError(f"Username already exists: {patch['username']}")
    if "email" in patch:
        patch["email"] = patch["email"].lower()
        taken = db.session.query(User.id).filter(
            db.func.lower(User.email) == patch["email"], User.id != user_id,
        ).first()
        if taken:
            raise ConflictError(f"Email already exists: {patch['email']}")


def list_users(
    *,
    search: str | None = None,
    role: str | None = None,
    is_active: bool | None = None,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    query = db.session.query(User)
    if search:
        like = f"%{search.strip()}%"
        query = query.filter(or_(
            User.username.ilike(like),
            User.email.ilike(like),
            User.first_name.ilike(like),
            User.last_name.ilike(like),
        ))
    if role:
        role = role.upper()
        if role not in ROLES:
            raise ValidationError(f"role must be one of {', '.join(ROLES)}")
        query = query.filter(User.role == role)
    if is_active is not None:
        query = query.filter(User.is_active.is_(is_active))

    per_page = min(max(per_page or 20, 1), 100)
    page = max(page or 1, 1)
    total = query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1

    users = query.order_by(User.username.asc()).offset((page - 1) * per_page).limit(per_page).all()
    return {
        "items": [u.to_dict() for u in users],
        "count": len(users),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def get_user(user_id: int, actor: User) -> User:
    """Admins can read any account; everyone else only their own."""
    if actor.id != user_id and not _is_admin(actor):
        raise ForbiddenError("Access denied")
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


def recent_sales(user_id: int, limit: int = 10) -> list[Sale]:
    return (
        db.session.query(Sale)
        .filter(Sale.cashier_user_id == user_id)
        .order_by(Sale.sale_date.desc(), Sale.id.desc())
        .limit(limit)
        .all()
    )


def create_user(patch: dict, password: str | None) -> User:
    if not password:
        raise ValidationError("password is required")
    username = patch["username"]
    email = patch["email"].lower()
    if db.session.query(User.id).filter(db.func.lower(User.email) == email).first():
        raise ConflictError(f"Email already exists: {email}")
    user = auth_service.create_user(
        username,
        email,
        password,
        role=patch.get("role") or "CASHIER",
        first_name=patch.get("first_name"),
        last_name=patch.get("last_name"),
    )
    current_app.logger.info("User created: id=%s username=%s role=%s", user.id, user.username, user.role)
    return user


def update_user(user_id: int, patch: dict, actor: User) -> User:
    """
    Apply a profile patch.

    Non-admins may only edit themselves and may not touch role or is_active.
    Nobody changes their own role or status. Deactivation revokes sessions.
    """
    is_self = actor.id == user_id
    if not is_self and not _is_admin(actor):
        raise ForbiddenError("Access denied")
    if not _is_admin(actor) and ("role" in patch or "is_active" in patch):
        raise ForbiddenError("Cannot change role or status")
    if is_self and ("role" in patch or "is_active" in patch):
        raise ValidationError("Cannot change your own role or status")
    if "role" in patch:
        patch["role"] = (patch["role"] or "").upper()
        if patch["role"] not in ROLES:
            raise ValidationError(f"role must be one of {', '.join(ROLES)}")

    def _op() -> User:
        user = lock_for_update(db.session.query(User).filter(User.id == user_id)).first()
        if not user:
            raise NotFoundError("User not found")
        _check_identifiers(patch, user.id)
        was_active = user.is_active
        for k, v in patch.items():
            setattr(user, k, v)
        if was_active and not user.is_active:
            session_service.revoke_all_user_sessions(user.id, "Account deactivated by admin")
        return user

    user = run_in_transaction(_op, description="update user")
    current_app.logger.info(
        "User updated: id=%s by=%s fields=%s", user.id, actor.id, ",".join(sorted(patch)),
    )
    return user


def set_user_status(user_id: int, is_active: bool, actor: User) -> tuple[User, int]:
    """Activate or deactivate an account. Returns the user and the number of sessions revoked."""
    if not isinstance(is_active, bool):
        raise ValidationError("is_active must be a boolean")
    if actor.id == user_id:
        raise ValidationError("Cannot change your own status")

    def _op() -> tuple[User, int]:
        user = lock_for_update(db.session.query(User).filter(User.id == user_id)).first()
        if not user:
            raise NotFoundError("User not found")
        if user.is_active == is_active:
            raise ValidationError(f"User is already {'active' if is_active else 'deactivated'}")
        user.is_active = is_active
        revoked = 0
        if not is_active:
            revoked = session_service.revoke_all_user_sessions(user.id, "Account deactivated by admin")
        return user, revoked

    user, revoked = run_in_transaction(_op, description="update user status")
    current_app.logger.info(
        "User %s: id=%s by=%s sessions_revoked=%s",
        "activated" if is_active else "deactivated", user.id, actor.id, revoked,
    )
    return user, revoked


def change_password(
    user_id: int,
    actor: User,
    *,
    current_password: str | None,
    new_password: str | None,
    confirm_password: str | None,
    keep_token: str | None = None,
) -> int:
    """
    Change one's own password. Other sessions are revoked; keep_token survives.

    Returns the number of sessions revoked.
    """
    if actor.id != user_id:
        raise ForbiddenError("Access denied")
    if not current_password or not new_password:
        raise ValidationError("current_password and new_password are required")
    if new_password != confirm_password:
        raise ValidationError("confirm_password does not match new_password")
    new_hash = auth_service.hash_password(new_password)

    def _op() -> int:
        user = lock_for_update(db.session.query(User).filter(User.id == user_id)).first()
        if not user:
            raise NotFoundError("User not found")
        if not auth_service.verify_password(current_password, user.password_hash):
            raise ValidationError("Current password is incorrect")
        user.password_hash = new_hash
        return session_service.revoke_all_user_sessions(
            user.id, "Password changed", keep_token=keep_token,
        )

    revoked = run_in_transaction(_op, description="change password")
    current_app.logger.info("Password changed: user=%s sessions_revoked=%s", user_id, revoked)
    return revoked
