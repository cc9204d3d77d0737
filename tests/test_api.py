"""
API tests through an in-process ASGI transport.
"""
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from agency_ledger.api.dependencies import build_services, get_services
from agency_ledger.api.main import create_app


@pytest_asyncio.fixture
async def client(
    session_factory: Any, test_settings: Any, fanout: Any, clock: Any
) -> AsyncGenerator[AsyncClient, Any]:
    app = create_app(use_lifespan=False)
    services = build_services(session_factory, test_settings, fanout, clock)
    app.dependency_overrides[get_services] = lambda: services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.mark.integration
class TestMembershipApi:
    @pytest.mark.asyncio
    async def test_request_and_approve(
        self, client: AsyncClient, make_escort: Any, make_agency: Any
    ) -> None:
        escort = await make_escort()
        agency = await make_agency()

        response = await client.post(
            "/memberships/requests",
            json={"escort_id": str(escort.id), "agency_id": str(agency.id), "message": "Hi"},
        )
        assert response.status_code == 201
        membership_id = response.json()["membership"]["id"]
        assert response.json()["membership"]["status"] == "PENDING"

        response = await client.post(
            f"/memberships/requests/{membership_id}/decision",
            json={"action": "approve", "agency_id": str(agency.id), "commission_rate": 0.2},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["membership"]["status"] == "ACTIVE"
        assert body["membership"]["commission_rate"] == 0.2
        assert body["cancelled_count"] == 0

        response = await client.get(f"/escorts/{escort.id}/membership")
        assert response.status_code == 200
        assert response.json()["status"] == "agency"
        assert response.json()["current_agency"]["agency_id"] == str(agency.id)

    @pytest.mark.asyncio
    async def test_ledger_errors_map_to_status_and_code(
        self, client: AsyncClient, make_escort: Any, make_agency: Any
    ) -> None:
        escort = await make_escort()
        agency = await make_agency()
        payload = {"escort_id": str(escort.id), "agency_id": str(agency.id)}
        await client.post("/memberships/requests", json=payload)

        response = await client.post("/memberships/requests", json=payload)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "MEMBERSHIP_PENDING"

        response = await client.post("/memberships/leave", json={"escort_id": str(escort.id)})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NO_ACTIVE_MEMBERSHIP"

    @pytest.mark.asyncio
    async def test_invalid_action(self, client: AsyncClient, make_escort: Any, make_agency: Any) -> None:
        escort = await make_escort()
        agency = await make_agency()
        created = await client.post(
            "/memberships/requests",
            json={"escort_id": str(escort.id), "agency_id": str(agency.id)},
        )
        membership_id = created.json()["membership"]["id"]

        response = await client.post(
            f"/memberships/requests/{membership_id}/decision", json={"action": "promote"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_ACTION"

    @pytest.mark.asyncio
    async def test_malformed_body_is_rejected(self, client: AsyncClient) -> None:
        response = await client.post("/memberships/requests", json={"escort_id": "not-a-uuid"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_grace_period_error_carries_details(
        self, client: AsyncClient, make_escort: Any, make_agency: Any, join: Any, clock: Any
    ) -> None:
        escort = await make_escort()
        agency = await make_agency()
        await join(escort, agency)
        verified = await client.post(
            "/verifications",
            json={
                "agency_id": str(agency.id),
                "escort_id": str(escort.id),
                "pricing_tier_id": "default-basic",
            },
        )
        assert verified.status_code == 201
        clock.advance(days=10)

        response = await client.post("/memberships/leave", json={"escort_id": str(escort.id)})

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "VERIFICATION_GRACE_PERIOD"
        assert error["details"]["days_remaining"] == 20


@pytest.mark.integration
class TestInvitationApi:
    @pytest.mark.asyncio
    async def test_invite_list_and_accept(
        self, client: AsyncClient, make_escort: Any, make_agency: Any
    ) -> None:
        escort = await make_escort()
        agency = await make_agency()

        response = await client.post(
            "/invitations",
            json={"agency_id": str(agency.id), "escort_id": str(escort.id), "proposed_role": "VIP"},
        )
        assert response.status_code == 201
        invitation_id = response.json()["id"]

        listed = await client.get(f"/escorts/{escort.id}/invitations")
        assert [i["id"] for i in listed.json()] == [invitation_id]

        response = await client.post(
            f"/invitations/{invitation_id}/respond",
            json={"action": "accept", "escort_id": str(escort.id)},
        )
        assert response.status_code == 200
        assert response.json()["invitation"]["status"] == "ACCEPTED"
        assert response.json()["membership"]["role"] == "VIP"

        accepted = await client.get(f"/escorts/{escort.id}/invitations", params={"status": "ACCEPTED"})
        assert len(accepted.json()) == 1


@pytest.mark.integration
class TestVerificationApi:
    @pytest.mark.asyncio
    async def test_pricing_defaults(self, client: AsyncClient) -> None:
        response = await client.get("/verifications/pricing")

        assert response.status_code == 200
        assert [t["id"] for t in response.json()] == [
            "default-basic",
            "default-premium",
            "default-vip",
        ]

    @pytest.mark.asyncio
    async def test_expiring_and_stats(
        self, client: AsyncClient, make_escort: Any, make_agency: Any, join: Any, clock: Any
    ) -> None:
        escort = await make_escort("Mia")
        agency = await make_agency()
        await join(escort, agency)
        await client.post(
            "/verifications",
            json={
                "agency_id": str(agency.id),
                "escort_id": str(escort.id),
                "pricing_tier_id": "default-basic",
            },
        )
        clock.advance(days=25)

        expiring = await client.get(f"/agencies/{agency.id}/verifications/expiring")
        assert expiring.status_code == 200
        [row] = expiring.json()
        assert row["display_name"] == "Mia"
        assert row["days_until_expiry"] == 5

        renewed = await client.post(
            "/verifications/renew",
            json={
                "agency_id": str(agency.id),
                "escort_id": str(escort.id),
                "pricing_tier_id": "default-basic",
            },
        )
        assert renewed.status_code == 201
        assert renewed.json()["is_renewal"] is True

        members = await client.get(f"/agencies/{agency.id}/members")
        assert members.status_code == 200
        [member] = members.json()["members"]
        assert member["display_name"] == "Mia"
        assert member["is_verified"] is True
        assert members.json()["pagination"]["total"] == 1

        pending = await client.get(f"/agencies/{agency.id}/members", params={"status": "pending"})
        assert pending.json()["members"] == []

        invalid = await client.get(f"/agencies/{agency.id}/members", params={"status": "banned"})
        assert invalid.status_code == 400
        assert invalid.json()["error"]["code"] == "INVALID_STATUS_FILTER"

        stats = await client.get(f"/agencies/{agency.id}/stats")
        assert stats.json()["counters"]["total_verifications"] == 2
        assert stats.json()["verifications"]["revenue"] == 100.0


@pytest.mark.integration
class TestAdminAndMonitoringApi:
    @pytest.mark.asyncio
    async def test_maintenance_endpoints(self, client: AsyncClient) -> None:
        sweep = await client.post("/admin/sweep")
        assert sweep.status_code == 200
        assert sweep.json()["invitations_expired"] == 0

        cleanup = await client.post("/admin/cleanup")
        assert cleanup.json()["cancelled"] == 0

        audit = await client.post("/admin/audit", params={"repair": "true"})
        assert audit.json()["drift"] == []

    @pytest.mark.asyncio
    async def test_health_endpoints(self, client: AsyncClient) -> None:
        live = await client.get("/health/live")
        assert live.json()["status"] == "alive"

        ready = await client.get("/health/ready")
        assert ready.status_code == 200
        assert ready.json()["checks"]["database"]["status"] == "healthy"
        assert ready.json()["checks"]["outbox"]["pending_events"] == 0

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client: AsyncClient) -> None:
        response = await client.get("/health/live", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    @pytest.mark.asyncio
    async def test_metrics_exposed(self, client: AsyncClient) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "ledger_transitions_total" in response.text
