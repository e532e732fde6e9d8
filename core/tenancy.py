from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from core.db import get_db
from core.errors import Unauthenticated, Unauthorized, TenantNotFound, ValidationFailed
from models.tenant import Tenant
from security.actor import Actor
from security.jwt import decode_access


def resolve_domain(request: Request, x_tenant_domain: Optional[str] = Header(default=None, alias="X-Tenant-Domain")) -> str:
    """Resolve tenant domain from X-Tenant-Domain header or Host header."""
    if x_tenant_domain:
        return x_tenant_domain.lower()
    host = request.headers.get("host")
    if not host:
        raise ValidationFailed("Missing tenant domain")
    return host.split(":")[0].lower()


def get_current_tenant(domain: str = Depends(resolve_domain), db: Session = Depends(get_db)) -> Tenant:
    """FastAPI dependency that returns the Tenant matching the current domain."""
    # Try exact domain match first
    tenant = db.query(Tenant).filter(Tenant.domain == domain).one_or_none()

    # If not found, try subdomain match (e.g., acme.platform.com)
    if not tenant and "." in domain:
        subdomain = domain.split(".")[0]
        tenant = db.query(Tenant).filter(Tenant.subdomain == subdomain).one_or_none()

    if not tenant:
        raise TenantNotFound(f"No tenant for domain '{domain}'")

    if not tenant.is_active:
        raise Unauthorized("Tenant is inactive")

    if tenant.is_suspended:
        raise Unauthorized(f"Tenant is suspended: {tenant.suspension_reason or 'Contact support'}")

    return tenant


def get_current_actor(authorization: Optional[str] = Header(default=None)) -> Actor:
    """Bearer JWT -> Actor."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthenticated("Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        claims = decode_access(token)
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token has expired")
    except jwt.InvalidTokenError:
        raise Unauthenticated("Invalid token")
    if not claims.get("sub"):
        raise Unauthenticated("Token has no subject")
    return Actor.from_claims(claims)


@dataclass
class TenantContext:
    tenant: Tenant
    actor: Actor

    @property
    def tenant_id(self) -> int:
        return self.tenant.id


def get_tenant_context(
    tenant: Tenant = Depends(get_current_tenant),
    actor: Actor = Depends(get_current_actor),
) -> TenantContext:
    """Tenant plus an actor allowed to act on it."""
    if not actor.can_access(tenant.id):
        raise Unauthorized("Actor does not belong to this tenant")
    return TenantContext(tenant=tenant, actor=actor)
