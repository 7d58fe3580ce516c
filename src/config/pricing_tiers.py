"""
Pricing Tier Catalog
Static subscription tiers referenced by id from Stripe subscription metadata.
"""

from dataclasses import dataclass

from src.schemas.common import MembershipTier

# (monthly credits, monthly price in USD)
PRO_CREDIT_OPTIONS: tuple[tuple[int, int], ...] = (
    (100, 25),
    (200, 50),
    (400, 100),
    (800, 200),
    (1200, 294),
    (2000, 480),
    (3000, 705),
    (4000, 920),
    (5000, 1125),
)

ENTERPRISE_TIER_ID = "enterprise-custom"

# Cloud credits are granted at Stripe as monetary credit
CLOUD_CENTS_PER_CREDIT = 1


@dataclass(frozen=True)
class Tier:
    tier_id: str
    tier_name: str  # "pro" or "enterprise"
    name: str
    monthly_credits: int
    monthly_price: int
    is_contact_based: bool = False


def _build_catalog() -> dict[str, Tier]:
    catalog = {
        f"pro-{credits}": Tier(
            tier_id=f"pro-{credits}",
            tier_name="pro",
            name=f"Pro {credits}",
            monthly_credits=credits,
            monthly_price=price,
        )
        for credits, price in PRO_CREDIT_OPTIONS
    }
    # Contact-based: credits are granted manually
    catalog[ENTERPRISE_TIER_ID] = Tier(
        tier_id=ENTERPRISE_TIER_ID,
        tier_name="enterprise",
        name="Enterprise",
        monthly_credits=0,
        monthly_price=0,
        is_contact_based=True,
    )
    return catalog


TIER_CATALOG: dict[str, Tier] = _build_catalog()

_MEMBERSHIP_BY_TIER_NAME = {
    "free": MembershipTier.FREE,
    "pro": MembershipTier.PRO,
    "enterprise": MembershipTier.ENTERPRISE,
}


def get_tier_by_id(tier_id: str | None) -> Tier | None:
    """Look up a tier by id. Returns None for unknown ids; callers must fail closed."""
    if not tier_id:
        return None
    return TIER_CATALOG.get(tier_id.strip())


def membership_tier_for(tier_name: str | None) -> MembershipTier | None:
    """Map a tier name ("pro", "enterprise", "free") to the ledger's membership tier."""
    if not tier_name:
        return None
    return _MEMBERSHIP_BY_TIER_NAME.get(tier_name.strip().lower())
