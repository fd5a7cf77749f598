"""
HTTP adapter: business error mapping, JWT handling and request-level
permission checks
"""
from datetime import timedelta

import pytest
from bson import ObjectId
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from auth import (
    create_access_token,
    create_refresh_token,
    decode_access_token,
    decode_refresh_token,
)
from business_routes import register_exception_handlers
from core.errors import (
    DuplicateIdentifierError,
    IdentifierCollisionError,
    IllegalStateTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from permissions import PermissionChecker


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/missing")
    async def missing():
        raise NotFoundError("Supplier", "abc")

    @app.get("/invalid")
    async def invalid():
        raise ValidationFailedError([{"field": "customer_name", "message": "field required"}])

    @app.get("/duplicate")
    async def duplicate():
        raise DuplicateIdentifierError("Supplier", "Kajaria")

    @app.get("/collision")
    async def collision():
        raise IdentifierCollisionError("Purchase order", 3, "PO-004")

    @app.get("/transition")
    async def transition():
        raise IllegalStateTransitionError("Only Draft can be edited", allowed=["Draft"])

    return TestClient(app)


class TestErrorMapping:
    """Each business error becomes its status code with a kind/detail body"""

    def test_not_found(self, client):
        response = client.get("/missing")
        assert response.status_code == 404
        assert response.json() == {"kind": "NOT_FOUND", "detail": "Supplier not found"}

    def test_validation_lists_fields(self, client):
        response = client.get("/invalid")
        assert response.status_code == 422
        body = response.json()
        assert body["kind"] == "VALIDATION_FAILED"
        assert body["errors"] == [{"field": "customer_name", "message": "field required"}]

    def test_supplied_duplicate_is_conflict(self, client):
        response = client.get("/duplicate")
        assert response.status_code == 409
        assert response.json()["detail"] == "Supplier 'Kajaria' already exists"

    def test_exhausted_retries_are_service_unavailable(self, client):
        response = client.get("/collision")
        assert response.status_code == 503
        assert response.json() == {
            "kind": "IDENTIFIER_COLLISION",
            "detail": "Failed to create Purchase order after 3 attempts due to identifier collisions"
        }

    def test_illegal_transition_lists_allowed_states(self, client):
        response = client.get("/transition")
        assert response.status_code == 400
        assert response.json()["allowed"] == ["Draft"]


class TestTokens:

    def test_access_token_round_trip(self):
        token = create_access_token("u1", "t1", "Admin")
        claims = decode_access_token(token)
        assert (claims["user_id"], claims["tenant_id"], claims["role"]) == ("u1", "t1", "Admin")

    def test_expired_access_token(self):
        token = create_access_token("u1", "t1", "Admin", expires_delta=timedelta(minutes=-1))
        with pytest.raises(HTTPException) as excinfo:
            decode_access_token(token)
        assert excinfo.value.status_code == 401
        assert "expired" in excinfo.value.detail

    def test_refresh_token_is_not_an_access_token(self):
        refresh = create_refresh_token("u1")
        assert decode_refresh_token(refresh)["user_id"] == "u1"
        with pytest.raises(HTTPException) as excinfo:
            decode_access_token(refresh)
        assert excinfo.value.status_code == 401

    def test_garbage_token(self):
        with pytest.raises(HTTPException):
            decode_refresh_token("not-a-token")


class TestPermissionChecker:
    """Token claims must match a live user of a live tenant"""

    async def insert_user(self, db, tenant_id, **overrides):
        user = {
            "tenant_id": tenant_id,
            "name": "Owner",
            "email": "owner@acmetiles.com",
            "hashed_password": "x",
            "role": "Staff",
            "active_status": True,
        }
        user.update(overrides)
        result = await db.users.insert_one(user)
        return str(result.inserted_id)

    async def test_valid_user(self, db, tenant_id):
        user_id = await self.insert_user(db, tenant_id)
        user = await PermissionChecker(db).get_authenticated_user({"user_id": user_id, "tenant_id": tenant_id})
        assert user["user_id"] == user_id
        assert "hashed_password" not in user

    async def test_inactive_user(self, db, tenant_id):
        user_id = await self.insert_user(db, tenant_id, active_status=False)
        with pytest.raises(HTTPException) as excinfo:
            await PermissionChecker(db).get_authenticated_user({"user_id": user_id, "tenant_id": tenant_id})
        assert excinfo.value.status_code == 403

    async def test_token_for_another_tenant(self, db, tenant_id, other_tenant_id):
        user_id = await self.insert_user(db, tenant_id)
        with pytest.raises(HTTPException) as excinfo:
            await PermissionChecker(db).get_authenticated_user({"user_id": user_id, "tenant_id": other_tenant_id})
        assert excinfo.value.status_code == 403

    async def test_unknown_user(self, db, tenant_id):
        with pytest.raises(HTTPException) as excinfo:
            await PermissionChecker(db).get_authenticated_user({"user_id": str(ObjectId()), "tenant_id": tenant_id})
        assert excinfo.value.status_code == 401

    async def test_admin_check(self, db):
        checker = PermissionChecker(db)
        assert await checker.check_admin_role({"role": "Admin"}) is True
        with pytest.raises(HTTPException):
            await checker.check_admin_role({"role": "Staff"})
