"""Plan catalog — prices and billing periods for purchasable plans."""

from dataclasses import dataclass
from datetime import datetime

from app.billing.errors import InvalidPlan
from app.billing.periods import add_months
from app.config import Settings


@dataclass(frozen=True)
class Plan:
    """A purchasable plan with its effective price."""

    name: str
    display_name: str
    amount: int  # in paise (e.g., 49900 = ₹499.00)
    currency: str
    period_months: int
    description: str

    def period_end(self, start: datetime) -> datetime:
        """End of a billing period that starts at ``start``."""
        return add_months(start, self.period_months)


def build_catalog(settings: Settings) -> dict[str, Plan]:
    """Build the effective plan catalog from settings.

    In testing mode every plan is charged ``testing_amount`` so real
    checkouts can be exercised for a nominal fee.
    """
    return {
        name: Plan(
            name=name,
            display_name=config.display_name,
            amount=settings.testing_amount if settings.testing_mode else config.amount,
            currency=settings.currency,
            period_months=config.period_months,
            description=config.description,
        )
        for name, config in settings.plans.items()
    }


def get_plan(settings: Settings, plan_name: str | None) -> Plan:
    """Look up a plan by name. Raises InvalidPlan if it is not in the catalog."""
    catalog = build_catalog(settings)
    if plan_name is None or plan_name not in catalog:
        raise InvalidPlan(
            f"Invalid plan type. Choose one of: {', '.join(sorted(catalog))}.",
            plan=plan_name,
        )
    return catalog[plan_name]
