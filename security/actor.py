from dataclasses import dataclass
from typing import Any, Dict, Optional

PLATFORM_ADMIN = "platform_admin"


@dataclass(frozen=True)
class Actor:
    """Who caused a transition; written to every history row."""

    id: str
    name: str
    role: str = "member"
    tenant_id: Optional[int] = None

    @property
    def is_platform_admin(self) -> bool:
        return self.role == PLATFORM_ADMIN

    def can_access(self, tenant_id: int) -> bool:
        return self.is_platform_admin or self.tenant_id == tenant_id

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "Actor":
        tenant_id = claims.get("tenant_id")
        return cls(
            id=str(claims["sub"]),
            name=claims.get("name") or claims.get("email") or str(claims["sub"]),
            role=claims.get("role") or "member",
            tenant_id=int(tenant_id) if tenant_id is not None else None,
        )


SYSTEM_ACTOR = Actor(id="system", name="system", role=PLATFORM_ADMIN)


def gateway_actor(gateway_type: str) -> Actor:
    return Actor(id="system", name=f"webhook:{gateway_type}", role=PLATFORM_ADMIN)
