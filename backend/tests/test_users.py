"""
User management tests.

Verifies:
- Admin-only listing, creation and activation
- Staff can read and edit only their own record, never their own role or status
- Deactivation and password changes revoke the right sessions
"""

from stockline.extensions import db
from stockline.models import SessionToken, User


NEW_PASSWORD = "Changed456!"


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


# =============================================================================
# ADMIN USER MANAGEMENT
# =============================================================================


class TestAdminUsers:

    def test_list_and_filter(self, client, admin_headers, cashier_user, manager_user):
        resp = client.get("/api/users", headers=admin_headers)
        assert resp.status_code == 200
        assert [u["username"] for u in resp.json["items"]] == ["admin", "cashier", "manager"]
        assert resp.json["pagination"]["total"] == 3

        cashiers = client.get("/api/users?role=cashier", headers=admin_headers)
        assert [u["username"] for u in cashiers.json["items"]] == ["cashier"]

        searched = client.get("/api/users?q=manag", headers=admin_headers)
        assert [u["username"] for u in searched.json["items"]] == ["manager"]

    def test_list_requires_admin(self, client, manager_headers):
        resp = client.get("/api/users", headers=manager_headers)
        assert resp.status_code == 403

    def test_create_user(self, client, admin_headers, login):
        resp = client.post(
            "/api/users",
            json={
                "username": "newbie",
                "email": "Newbie@Stockline.test",
                "password": "Password123!",
                "first_name": "New",
                "role": "manager",
            },
            headers=admin_headers,
        )

        assert resp.status_code == 201, resp.json
        assert resp.json["user"]["role"] == "MANAGER"
        assert resp.json["user"]["email"] == "newbie@stockline.test"
        assert "password_hash" not in resp.json["user"]
        assert login("newbie")

    def test_create_duplicate_username(self, client, admin_headers, cashier_user):
        resp = client.post(
            "/api/users",
            json={"username": "cashier", "email": "other@stockline.test", "password": "Password123!"},
            headers=admin_headers,
        )
        assert resp.status_code == 409

    def test_create_rejects_weak_or_missing_password(self, client, admin_headers):
        weak = client.post(
            "/api/users",
            json={"username": "weak", "email": "weak@stockline.test", "password": "short"},
            headers=admin_headers,
        )
        missing = client.post(
            "/api/users",
            json={"username": "nopass", "email": "nopass@stockline.test"},
            headers=admin_headers,
        )
        assert weak.status_code == 400
        assert missing.status_code == 400
        assert db.session.query(User).filter(User.username.in_(["weak", "nopass"])).count() == 0

    def test_admin_changes_role(self, client, admin_headers, cashier_user):
        resp = client.put(f"/api/users/{cashier_user.id}", json={"role": "MANAGER"}, headers=admin_headers)
        assert resp.status_code == 200
        assert db.session.get(User, cashier_user.id).role == "MANAGER"

    def test_admin_cannot_change_own_role(self, client, admin_headers, admin_user):
        resp = client.put(f"/api/users/{admin_user.id}", json={"role": "CASHIER"}, headers=admin_headers)
        assert resp.status_code == 400
        assert db.session.get(User, admin_user.id).role == "ADMIN"

    def test_email_conflict(self, client, admin_headers, cashier_user, manager_user):
        resp = client.put(
            f"/api/users/{cashier_user.id}",
            json={"email": "MANAGER@stockline.test"},
            headers=admin_headers,
        )
        assert resp.status_code == 409


# =============================================================================
# ACTIVATION
# =============================================================================


class TestUserStatus:

    def test_deactivation_revokes_sessions(self, client, admin_headers, cashier_headers, cashier_user, login):
        resp = client.patch(
            f"/api/users/{cashier_user.id}/status",
            json={"is_active": False},
            headers=admin_headers,
        )

        assert resp.status_code == 200
        assert resp.json["sessions_revoked"] == 1
        assert resp.json["user"]["is_active"] is False
        assert client.get("/api/auth/me", headers=cashier_headers).status_code == 401
        assert login("cashier") is None

        again = client.patch(
            f"/api/users/{cashier_user.id}/status",
            json={"is_active": False},
            headers=admin_headers,
        )
        assert again.status_code == 400

        back = client.patch(
            f"/api/users/{cashier_user.id}/status",
            json={"is_active": True},
            headers=admin_headers,
        )
        assert back.status_code == 200
        assert login("cashier")

    def test_cannot_change_own_status(self, client, admin_headers, admin_user):
        resp = client.patch(f"/api/users/{admin_user.id}/status", json={"is_active": False}, headers=admin_headers)
        assert resp.status_code == 400

    def test_status_must_be_boolean(self, client, admin_headers, cashier_user):
        resp = client.patch(f"/api/users/{cashier_user.id}/status", json={"is_active": "no"}, headers=admin_headers)
        assert resp.status_code == 400

    def test_status_requires_admin(self, client, manager_headers, cashier_user):
        resp = client.patch(f"/api/users/{cashier_user.id}/status", json={"is_active": False}, headers=manager_headers)
        assert resp.status_code == 403

    def test_unknown_user(self, client, admin_headers):
        resp = client.patch("/api/users/999999/status", json={"is_active": False}, headers=admin_headers)
        assert resp.status_code == 404


# =============================================================================
# SELF SERVICE
# =============================================================================


class TestSelfService:

    def test_read_own_record_only(self, client, cashier_headers, cashier_user, manager_user):
        own = client.get(f"/api/users/{cashier_user.id}", headers=cashier_headers)
        other = client.get(f"/api/users/{manager_user.id}", headers=cashier_headers)

        assert own.status_code == 200
        assert own.json["user"]["full_name"] == "Cashier"
        assert own.json["user"]["recent_sales"] == []
        assert other.status_code == 403

    def test_recent_sales_listed(self, client, cashier_headers, cashier_user, make_product):
        product = make_product(stock_quantity=5)
        client.post(
            "/api/sales",
            json={"items": [{"product_id": product.id, "quantity": 1}], "payment_method": "CASH"},
            headers=cashier_headers,
        )

        resp = client.get(f"/api/users/{cashier_user.id}", headers=cashier_headers)

        assert len(resp.json["user"]["recent_sales"]) == 1
        assert resp.json["user"]["recent_sales"][0]["status"] == "COMPLETED"

    def test_edit_own_names(self, client, cashier_headers, cashier_user):
        resp = client.put(
            f"/api/users/{cashier_user.id}",
            json={"first_name": "Casey", "last_name": "Till"},
            headers=cashier_headers,
        )
        assert resp.status_code == 200
        assert resp.json["user"]["full_name"] == "Casey Till"

    def test_cannot_edit_others_or_own_role(self, client, cashier_headers, cashier_user, manager_user):
        other = client.put(f"/api/users/{manager_user.id}", json={"first_name": "X"}, headers=cashier_headers)
        role = client.put(f"/api/users/{cashier_user.id}", json={"role": "ADMIN"}, headers=cashier_headers)

        assert other.status_code == 403
        assert role.status_code == 403
        assert db.session.get(User, cashier_user.id).role == "CASHIER"

    def test_profile(self, client, cashier_headers):
        me = client.get("/api/users/profile", headers=cashier_headers)
        assert me.json["user"]["username"] == "cashier"

        updated = client.put("/api/users/profile", json={"last_name": "Register"}, headers=cashier_headers)
        assert updated.status_code == 200
        assert updated.json["user"]["last_name"] == "Register"

        role = client.put("/api/users/profile", json={"role": "ADMIN"}, headers=cashier_headers)
        assert role.status_code == 400


class TestPasswordChange:

    def test_change_keeps_current_session_only(self, client, cashier_user, login):
        current = login("cashier")
        other = login("cashier")

        resp = client.patch(
            f"/api/users/{cashier_user.id}/password",
            json={
                "current_password": "Password123!",
                "new_password": NEW_PASSWORD,
                "confirm_password": NEW_PASSWORD,
            },
            headers=_bearer(current),
        )

        assert resp.status_code == 200
        assert resp.json["sessions_revoked"] == 1
        assert client.get("/api/auth/me", headers=_bearer(current)).status_code == 200
        assert client.get("/api/auth/me", headers=_bearer(other)).status_code == 401
        assert login("cashier") is None
        assert login("cashier", NEW_PASSWORD)
        revoked = db.session.query(SessionToken).filter_by(user_id=cashier_user.id, is_revoked=True).one()
        assert revoked.revoked_reason == "Password changed"

    def test_wrong_current_password(self, client, cashier_headers, cashier_user, login):
        resp = client.patch(
            f"/api/users/{cashier_user.id}/password",
            json={"current_password": "Nope123!", "new_password": NEW_PASSWORD, "confirm_password": NEW_PASSWORD},
            headers=cashier_headers,
        )
        assert resp.status_code == 400
        assert login("cashier")

    def test_confirmation_mismatch(self, client, cashier_headers, cashier_user):
        resp = client.patch(
            f"/api/users/{cashier_user.id}/password",
            json={"current_password": "Password123!", "new_password": NEW_PASSWORD, "confirm_password": "Other456!"},
            headers=cashier_headers,
        )
        assert resp.status_code == 400

    def test_cannot_change_someone_else(self, client, admin_headers, cashier_user):
        resp = client.patch(
            f"/api/users/{cashier_user.id}/password",
            json={"current_password": "Password123!", "new_password": NEW_PASSWORD, "confirm_password": NEW_PASSWORD},
            headers=admin_headers,
        )
        assert resp.status_code == 403
