"""
Platform fee calculation.

``compute_fee_breakdown`` is pure: amount, gateway fee and a resolved tier in,
breakdown out. ``FeeCalculator`` only adds the lookup of the tenant's tier.
"""
import logging
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core.config import settings
from models.fee_tier import PlatformFeeTier
from models.tenant import Tenant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeTierTerms:
    name: str
    percentage: Decimal
    fixed_fee_cents: int = 0
    min_fee_cents: Optional[int] = None
    max_fee_cents: Optional[int] = None
    fee_waived: bool = False

    @classmethod
    def from_model(cls, tier: PlatformFeeTier) -> "FeeTierTerms":
        return cls(
            name=tier.name,
            percentage=Decimal(str(tier.percentage)),
            fixed_fee_cents=tier.fixed_fee_cents or 0,
            min_fee_cents=tier.min_fee_cents,
            max_fee_cents=tier.max_fee_cents,
            fee_waived=bool(tier.fee_waived),
        )


DEFAULT_FEE_TIERS = (
    FeeTierTerms(name="starter", percentage=Decimal("3.00")),
    FeeTierTerms(name="professional", percentage=Decimal("2.50")),
    FeeTierTerms(name="enterprise", percentage=Decimal("1.50")),
    FeeTierTerms(name="organization", percentage=Decimal("0.00"), fee_waived=True),
)


@dataclass(frozen=True)
class FeeBreakdown:
    amount_cents: int
    gateway_fee_cents: int
    platform_fee_cents: int
    platform_fee_percentage: Decimal
    platform_fee_fixed_cents: int
    total_fees_cents: int
    net_amount_cents: int
    fee_waived: bool
    fee_waived_reason: Optional[str]
    tier_name: str

    def to_payment_fields(self) -> Dict[str, Any]:
        fields = asdict(self)
        fields.pop("amount_cents")
        fields.pop("tier_name")
        return fields


def _percent_of(amount_cents: int, percentage: Decimal) -> int:
    fee = Decimal(amount_cents) * percentage / Decimal(100)
    return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_fee_breakdown(
    amount_cents: int,
    gateway_fee_cents: int,
    tier: FeeTierTerms,
    waived_reason: Optional[str] = None,
) -> FeeBreakdown:
    """Split ``amount_cents`` into gateway fee, platform fee and merchant net.

    ``waived_reason`` waives the platform fee regardless of the tier (tenant-level
    waiver); a tier flagged ``fee_waived`` waives it with a tier-derived reason.
    """
    if amount_cents < 0 or gateway_fee_cents < 0:
        raise ValueError("Amounts must be non-negative")

    if waived_reason is None and tier.fee_waived:
        waived_reason = f"Platform fees are waived on the {tier.name} tier"
    fee_waived = waived_reason is not None

    if fee_waived:
        platform_fee = 0
        percentage = Decimal("0")
        fixed = 0
    else:
        percentage = tier.percentage
        fixed = tier.fixed_fee_cents
        platform_fee = _percent_of(amount_cents, percentage) + fixed
        if tier.min_fee_cents is not None:
            platform_fee = max(platform_fee, tier.min_fee_cents)
        if tier.max_fee_cents is not None:
            platform_fee = min(platform_fee, tier.max_fee_cents)

    total_fees = gateway_fee_cents + platform_fee
    net = amount_cents - total_fees
    if net < 0:
        logger.warning(
            "Fees of %s exceed amount %s on tier %s; net floored at 0, check the tier configuration",
            total_fees, amount_cents, tier.name,
        )
        net = 0

    return FeeBreakdown(
        amount_cents=amount_cents,
        gateway_fee_cents=gateway_fee_cents,
        platform_fee_cents=platform_fee,
        platform_fee_percentage=percentage,
        platform_fee_fixed_cents=fixed,
        total_fees_cents=total_fees,
        net_amount_cents=net,
        fee_waived=fee_waived,
        fee_waived_reason=waived_reason,
        tier_name=tier.name,
    )


def seed_default_tiers(db: Session) -> int:
    """Insert the built-in tier catalog when the table is empty."""
    if db.query(PlatformFeeTier.id).first() is not None:
        return 0
    for terms in DEFAULT_FEE_TIERS:
        db.add(PlatformFeeTier(
            name=terms.name,
            percentage=terms.percentage,
            fixed_fee_cents=terms.fixed_fee_cents,
            min_fee_cents=terms.min_fee_cents,
            max_fee_cents=terms.max_fee_cents,
            fee_waived=terms.fee_waived,
            is_active=True,
        ))
    db.flush()
    return len(DEFAULT_FEE_TIERS)


class FeeCalculator:
    """Resolves a tenant's tier, then delegates to ``compute_fee_breakdown``."""

    def __init__(self, db: Session, default_tier: Optional[str] = None):
        self.db = db
        self.default_tier = default_tier or settings.DEFAULT_FEE_TIER

    def resolve_tier(self, tenant: Optional[Tenant]) -> FeeTierTerms:
        tier = tenant.fee_tier if tenant is not None else None
        if tier is not None and tier.is_active:
            return FeeTierTerms.from_model(tier)

        tier = (
            self.db.query(PlatformFeeTier)
            .filter(PlatformFeeTier.name == self.default_tier, PlatformFeeTier.is_active.is_(True))
            .one_or_none()
        )
        if tier is not None:
            return FeeTierTerms.from_model(tier)

        for terms in DEFAULT_FEE_TIERS:
            if terms.name == self.default_tier:
                return terms
        raise LookupError(f"Default fee tier {self.default_tier!r} is not configured")

    def calculate(self, amount_cents: int, gateway_fee_cents: int, tenant_id: int) -> FeeBreakdown:
        tenant = self.db.get(Tenant, tenant_id)
        tier = self.resolve_tier(tenant)
        waived_reason = None
        if tenant is not None and tenant.fee_waived:
            waived_reason = tenant.fee_waived_reason or "Platform fees waived for this tenant"
        return compute_fee_breakdown(amount_cents, gateway_fee_cents, tier, waived_reason)
