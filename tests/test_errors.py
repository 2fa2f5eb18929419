import pytest
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from leaselogix.api import deps
from leaselogix.core.db import get_db
from leaselogix.main import app

from tests.factories import auth_headers, make_user


class _BrokenInvitationService:
    async def get_invitation_stats(self, principal):
        raise OperationalError("SELECT 1", {}, Exception("connection reset"))


async def test_database_error_maps_to_internal(client, db):
    user = await make_user(db, "owner@example.com")
    app.dependency_overrides[deps.get_invitation_service] = lambda: _BrokenInvitationService()

    response = await client.get("/api/invites/stats", headers=auth_headers(user))

    assert response.status_code == 500
    assert response.json()["error"] == {
        "kind": "internal",
        "code": "database_error",
        "message": "An internal error occurred",
    }
    assert "connection reset" not in response.text


async def test_request_session_rolls_back_on_database_error(monkeypatch):
    sessions = get_db()
    session = await sessions.__anext__()
    rollbacks = []

    async def record_rollback():
        rollbacks.append(True)

    monkeypatch.setattr(session, "rollback", record_rollback)

    with pytest.raises(SQLAlchemyError):
        await sessions.athrow(SQLAlchemyError("deadlock detected"))
    assert rollbacks == [True]
