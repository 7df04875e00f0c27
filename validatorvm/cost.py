"""Cost and uptime estimates shown before cost-incurring actions.

All arithmetic is Decimal; rounding to cents happens only in format_usd.
Estimates inform the confirmation prompt, they never gate an action.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from .utils import warn

# On-demand USD/hour, approximate, us-west region pricing.
HOURLY_RATES: dict[str, Decimal] = {
    "m7i.4xlarge": Decimal("0.8064"),
    "m7i.2xlarge": Decimal("0.4032"),
    "m7i-flex.4xlarge": Decimal("0.65"),
    "m6i.4xlarge": Decimal("0.768"),
    "m6i.2xlarge": Decimal("0.384"),
    "t3.2xlarge": Decimal("0.3328"),
}
FALLBACK_RATE = Decimal("0.5")

# gp3 USD per GB-month
STORAGE_RATE_GB_MONTH = Decimal("0.08")

HOURS_PER_DAY = Decimal(24)
HOURS_PER_MONTH = Decimal(730)
_SECONDS_PER_HOUR = Decimal(3600)
_CENT = Decimal("0.01")


def _as_hours(hours: Decimal | int | float) -> Decimal:
    hours = Decimal(str(hours)) if not isinstance(hours, Decimal) else hours
    return max(hours, Decimal(0))


@dataclass(frozen=True)
class CostEstimate:
    resource_class: str
    rate: Decimal
    hours: Decimal
    fallback: bool = False

    @property
    def total(self) -> Decimal:
        return self.rate * self.hours

    def over(self, hours: Decimal | int | float) -> "CostEstimate":
        """Same rate over a different duration, without a second rate lookup."""
        return replace(self, hours=_as_hours(hours))


def hourly_rate(resource_class: str | None) -> tuple[Decimal, bool]:
    """Look up the hourly rate for an instance type.

    :return: (rate, is_fallback); unknown types get FALLBACK_RATE and a warning
    """
    rate = HOURLY_RATES.get(resource_class or "")
    if rate is not None:
        return rate, False
    warn(
        f"No price on file for instance type '{resource_class or 'unknown'}', "
        f"estimating with fallback rate ${FALLBACK_RATE}/hour"
    )
    return FALLBACK_RATE, True


def estimate_cost(resource_class: str | None, hours: Decimal | int | float) -> CostEstimate:
    """Estimate compute cost for running resource_class for the given hours.

    Negative hours are treated as zero.
    """
    rate, fallback = hourly_rate(resource_class)
    return CostEstimate(resource_class or "unknown", rate, _as_hours(hours), fallback)


def storage_cost_monthly(size_gb: int) -> Decimal:
    return Decimal(max(size_gb, 0)) * STORAGE_RATE_GB_MONTH


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        dt = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def elapsed_hours(since: str | datetime, now: str | datetime) -> Decimal:
    """Hours between since and now, floored at zero for clock skew."""
    delta = parse_timestamp(now) - parse_timestamp(since)
    seconds = Decimal(str(delta.total_seconds()))
    if seconds <= 0:
        return Decimal(0)
    return seconds / _SECONDS_PER_HOUR


def format_usd(amount: Decimal) -> str:
    return f"${amount.quantize(_CENT, rounding=ROUND_HALF_UP)}"


def format_duration(hours: Decimal) -> str:
    minutes = int(hours * 60)
    return f"{minutes // 60}h {minutes % 60}m"
