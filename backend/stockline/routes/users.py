# Overview: Flask API routes for staff accounts; admin user management and self-service profile.

# backend/stockline/routes/users.py
"""
User management routes.

- Admin only: list, create, activate/deactivate
- Any staff member: read/update own record and profile, change own password
"""

from flask import Blueprint, request, g, current_app

from ..errors import DomainError, ValidationError
from ..models import User
from ..services import users_service
from ..time_utils import to_utc_z
from ..validation import validate_payload
from ..decorators import require_auth, require_role

users_bp = Blueprint("users", __name__, url_prefix="/api/users")


def _user_detail(user: User) -> dict:
    data = user.to_dict()
    data["full_name"] = user.display_name
    return data


@users_bp.get("")
@require_auth
@require_role("ADMIN")
def list_users():
    """Query params: q, role, is_active (true/false), page, per_page."""
    try:
        is_active = request.args.get("is_active")
        result = users_service.list_users(
            search=request.args.get("q"),
            role=request.args.get("role"),
            is_active=None if is_active is None else is_active.lower() == "true",
            page=request.args.get("page", default=1, type=int),
            per_page=request.args.get("per_page", default=20, type=int),
        )
        return result
    except DomainError as e:
        return e.to_dict(), e.status_code


@users_bp.post("")
@require_auth
@require_role("ADMIN")
def create_user():
    """Body: {username, email, password, first_name?, last_name?, role?}."""
    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Invalid JSON payload")
        data = dict(data)
        password = data.pop("password", None)
        patch = validate_payload(
            model=User,
            payload=data,
            policy=users_service.USER_CREATE_POLICY,
            partial=False,
        )
        user = users_service.create_user(patch, password)
        return {"user": _user_detail(user), "message": "User created successfully"}, 201
    except DomainError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create user")
        return {"error": "Internal server error"}, 500


@users_bp.get("/profile")
@require_auth
def get_profile():
    return {"user": _user_detail(g.current_user)}


@users_bp.put("/profile")
@require_auth
def update_profile():
    """Body: any of {username, email, first_name, last_name}."""
    try:
        patch = validate_payload(
            model=User,
            payload=request.get_json(silent=True),
            policy=users_service.PROFILE_UPDATE_POLICY,
            partial=True,
        )
        user = users_service.update_user(g.current_user.id, patch, g.current_user)
        return {"user": _user_detail(user), "message": "Profile updated successfully"}
    except DomainError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update profile")
        return {"error": "Internal server error"}, 500


@users_bp.get("/<int:user_id>")
@require_auth
def get_user(user_id: int):
    """A user with their ten most recent sales."""
    try:
        user = users_service.get_user(user_id, g.current_user)
        data = _user_detail(user)
        data["recent_sales"] = [
            {
                "id": s.id,
                "invoice_number": s.invoice_number,
                "total_cents": s.total_cents,
                "status": s.status,
                "sale_date": to_utc_z(s.sale_date),
            }
            for s in users_service.recent_sales(user.id)
        ]
        return {"user": data}
    except DomainError as e:
        return e.to_dict(), e.status_code


@users_bp.put("/<int:user_id>")
@require_auth
def update_user(user_id: int):
    """Admins may set role and is_active; others may edit only their own names and email."""
    try:
        patch = validate_payload(
            model=User,
            payload=request.get_json(silent=True),
            policy=users_service.USER_ADMIN_UPDATE_POLICY,
            partial=True,
        )
        user = users_service.update_user(user_id, patch, g.current_user)
        return {"user": _user_detail(user), "message": "User updated successfully"}
    except DomainError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update user %s", user_id)
        return {"error": "Internal server error"}, 500


@users_bp.patch("/<int:user_id>/status")
@require_auth
@require_role("ADMIN")
def set_status(user_id: int):
    """Body: {is_active: bool}. Deactivation revokes the user's sessions."""
    try:
        data = request.get_json(silent=True) or {}
        user, revoked = users_service.set_user_status(user_id, data.get("is_active"), g.current_user)
        return {
            "user": _user_detail(user),
            "message": f"User {user.username} {'activated' if user.is_active else 'deactivated'}",
            "sessions_revoked": revoked,
        }
    except DomainError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update status of user %s", user_id)
        return {"error": "Internal server error"}, 500


@users_bp.patch("/<int:user_id>/password")
@require_auth
def change_password(user_id: int):
    """Body: {current_password, new_password, confirm_password}. The calling session stays valid."""
    try:
        data = request.get_json(silent=True) or {}
        revoked = users_service.change_password(
            user_id,
            g.current_user,
            current_password=data.get("current_password"),
            new_password=data.get("new_password"),
            confirm_password=data.get("confirm_password"),
            keep_token=g.token,
        )
        return {"message": "Password changed successfully", "sessions_revoked": revoked}
    except DomainError as e:
        return e.to_dict(), e.status_code
    except Exception:
        current_app.logger.exception("Failed to change password for user %s", user_id)
        return {"error": "Internal server error"}, 500
