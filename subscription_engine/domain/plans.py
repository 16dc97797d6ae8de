"""Plan catalog: plan types, monthly quotas, and price/processor-plan lookups."""

from dataclasses import dataclass
from enum import Enum

from subscription_engine.core.config import Settings, get_settings

UNLIMITED = -1


class PlanType(str, Enum):
    FREE = "free"
    PRO_MONTHLY = "pro_monthly"
    PRO_YEARLY = "pro_yearly"


class QuotaType(str, Enum):
    IDEAS = "ideas"
    VALIDATIONS = "validations"
    CONTENT = "content"


@dataclass(frozen=True)
class QuotaLimits:
    ideas: int
    validations: int
    content: int

    def limit_for(self, quota_type: QuotaType) -> int:
        return getattr(self, QuotaType(quota_type).value)


# Monthly quotas per plan (-1 = unlimited)
PLAN_QUOTAS: dict[PlanType, QuotaLimits] = {
    PlanType.FREE: QuotaLimits(ideas=3, validations=1, content=3),
    PlanType.PRO_MONTHLY: QuotaLimits(ideas=UNLIMITED, validations=25, content=UNLIMITED),
    PlanType.PRO_YEARLY: QuotaLimits(ideas=UNLIMITED, validations=25, content=UNLIMITED),
}


def parse_plan_type(value: str | None) -> PlanType | None:
    """Return the PlanType for a stored/payload string, or None if unknown."""
    try:
        return PlanType(value)
    except ValueError:
        return None


def quotas_for(plan_type: str | None) -> QuotaLimits:
    """Quotas for a plan; unknown or missing plans fall back to free-tier quotas."""
    plan = parse_plan_type(plan_type)
    return PLAN_QUOTAS[plan or PlanType.FREE]


def plan_prices(settings: Settings | None = None) -> tuple[int, int]:
    """(monthly_price, yearly_price) in minor units from configuration."""
    settings = settings or get_settings()
    return settings.price_pro_monthly, settings.price_pro_yearly


def plan_for_processor_plan_id(
    processor_plan_id: str | None, settings: Settings | None = None
) -> PlanType | None:
    """Map a Razorpay plan_id to the local plan type it sells."""
    if not processor_plan_id:
        return None
    settings = settings or get_settings()
    mapping = {
        settings.razorpay_plan_pro_monthly: PlanType.PRO_MONTHLY,
        settings.razorpay_plan_pro_yearly: PlanType.PRO_YEARLY,
    }
    mapping.pop("", None)
    return mapping.get(processor_plan_id)
