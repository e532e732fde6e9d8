"""
Tests for tenant resolution and tenant isolation.
"""
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import status

from core.config import settings
from security import jwt as jwt_utils


def _token(sub="7", **claims):
    return jwt_utils.create_access_token(sub, {"name": "Someone", "role": "owner", **claims})


class TestTenantResolution:
    """Tenant lookup from the X-Tenant-Domain header or the Host header."""

    def test_tenant_by_domain_header(self, client, auth_headers):
        response = client.get("/orders/", headers=auth_headers)
        assert response.status_code == status.HTTP_200_OK

    def test_tenant_by_host_header(self, client, tenant):
        headers = {"Authorization": f"Bearer {_token(tenant_id=tenant.id)}", "Host": "acme.example.com:8443"}
        response = client.get("/orders/", headers=headers)
        assert response.status_code == status.HTTP_200_OK

    def test_tenant_by_subdomain(self, client, tenant):
        headers = {"Authorization": f"Bearer {_token(tenant_id=tenant.id)}", "X-Tenant-Domain": "ACME.platform.test"}
        response = client.get("/orders/", headers=headers)
        assert response.status_code == status.HTTP_200_OK

    def test_tenant_not_found(self, client, tenant):
        headers = {"Authorization": f"Bearer {_token(tenant_id=tenant.id)}", "X-Tenant-Domain": "nowhere.example.org"}
        response = client.get("/orders/", headers=headers)
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error"] == "tenant_not_found"

    def test_inactive_tenant_forbidden(self, client, db, tenant, auth_headers):
        tenant.is_active = False
        db.commit()
        response = client.get("/orders/", headers=auth_headers)
        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert "inactive" in response.json()["message"]

    def test_suspended_tenant_forbidden(self, client, db, tenant, auth_headers):
        tenant.is_suspended = True
        tenant.suspension_reason = "Chargeback ratio"
        db.commit()
        response = client.get("/orders/", headers=auth_headers)
        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert "Chargeback ratio" in response.json()["message"]


class TestAuthentication:
    def test_missing_token(self, client, tenant):
        response = client.get("/orders/", headers={"X-Tenant-Domain": tenant.domain})
        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error"] == "unauthenticated"

    def test_garbage_token(self, client, tenant):
        headers = {"Authorization": "Bearer not-a-jwt", "X-Tenant-Domain": tenant.domain}
        response = client.get("/orders/", headers=headers)
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_expired_token(self, client, tenant):
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        token = jwt.encode(
            {"sub": "7", "type": "access", "tenant_id": tenant.id, "exp": int(past.timestamp())},
            settings.JWT_SECRET,
            algorithm=settings.JWT_ALG,
        )
        headers = {"Authorization": f"Bearer {token}", "X-Tenant-Domain": tenant.domain}
        response = client.get("/orders/", headers=headers)
        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert "expired" in response.json()["message"]


class TestTenantIsolation:
    def test_actor_from_another_tenant_forbidden(self, client, tenant, other_tenant):
        headers = {"Authorization": f"Bearer {_token(tenant_id=other_tenant.id)}", "X-Tenant-Domain": tenant.domain}
        response = client.get("/orders/", headers=headers)
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_platform_admin_reaches_any_tenant(self, client, other_tenant):
        headers = {"Authorization": f"Bearer {_token(role='platform_admin')}", "X-Tenant-Domain": other_tenant.domain}
        response = client.get("/orders/", headers=headers)
        assert response.status_code == status.HTTP_200_OK

    def test_other_tenants_order_is_forbidden(self, client, auth_headers, make_order, other_tenant):
        foreign = make_order(5000, for_tenant=other_tenant)
        response = client.get(f"/orders/{foreign.id}", headers=auth_headers)
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_other_tenants_order_cannot_be_charged(self, client, auth_headers, make_order, other_tenant, fake_gateway):
        foreign = make_order(5000, for_tenant=other_tenant)
        response = client.post(
            f"/orders/{foreign.id}/payments/charge",
            json={"paymentMethod": {"token": "tok_visa"}, "gatewayType": "fake"},
            headers=auth_headers,
        )
        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert fake_gateway.calls_for("charge") == []

    def test_order_listing_is_scoped(self, client, auth_headers, make_order, other_tenant):
        mine = make_order(5000)
        make_order(5000, for_tenant=other_tenant)
        orders = client.get("/orders/", headers=auth_headers).json()["orders"]
        assert [o["id"] for o in orders] == [mine.id]

    def test_order_numbers_are_per_tenant(self, make_order, other_tenant):
        assert make_order(100).order_number == "ORD-000001"
        assert make_order(100, for_tenant=other_tenant).order_number == "ORD-000001"
