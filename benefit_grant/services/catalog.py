"""
Purchase catalog configuration.

Maps paid amounts to credit packages and unlimited plans.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation


@dataclass(frozen=True)
class CreditPackage:
    """Credit package configuration."""

    amount: Decimal
    credits: int

    def __post_init__(self) -> None:
        """Validate package configuration."""
        if self.amount <= 0:
            raise ValueError(f"Amount must be positive: {self.amount}")
        if self.credits <= 0:
            raise ValueError(f"Credits must be positive: {self.credits}")


@dataclass(frozen=True)
class UnlimitedPlan:
    """Unlimited plan configuration."""

    amount: Decimal
    days: int

    def __post_init__(self) -> None:
        """Validate plan configuration."""
        if self.amount <= 0:
            raise ValueError(f"Amount must be positive: {self.amount}")
        if self.days <= 0:
            raise ValueError(f"Days must be positive: {self.days}")


def _credit_packages(table: dict[int, int]) -> dict[Decimal, CreditPackage]:
    return {Decimal(a): CreditPackage(amount=Decimal(a), credits=c) for a, c in table.items()}


def _unlimited_plans(table: dict[int, int]) -> dict[Decimal, UnlimitedPlan]:
    return {Decimal(a): UnlimitedPlan(amount=Decimal(a), days=d) for a, d in table.items()}


# Amount (major units) -> credits
CREDIT_PACKAGES: dict[Decimal, CreditPackage] = _credit_packages(
    {
        10: 60,
        20: 125,
        50: 330,
        100: 700,
        200: 1500,
    }
)

# Amount (major units) -> days of unlimited access
UNLIMITED_PLANS: dict[Decimal, UnlimitedPlan] = _unlimited_plans(
    {
        60: 7,
        80: 15,
        110: 30,
        160: 60,
        510: 70,
    }
)


@dataclass(frozen=True)
class Catalog:
    """Fixed price tables, looked up by exact amount."""

    credit_packages: dict[Decimal, CreditPackage] = field(
        default_factory=lambda: dict(CREDIT_PACKAGES)
    )
    unlimited_plans: dict[Decimal, UnlimitedPlan] = field(
        default_factory=lambda: dict(UNLIMITED_PLANS)
    )

    def __post_init__(self) -> None:
        """An amount may map to at most one catalog kind."""
        overlap = set(self.credit_packages) & set(self.unlimited_plans)
        if overlap:
            raise ValueError(f"Amounts listed as both package and plan: {sorted(overlap)}")

    def credit_package(self, amount: Decimal) -> CreditPackage | None:
        """Get credit package for an exact amount."""
        return self.credit_packages.get(normalize_amount(amount))

    def unlimited_plan(self, amount: Decimal) -> UnlimitedPlan | None:
        """Get unlimited plan for an exact amount."""
        return self.unlimited_plans.get(normalize_amount(amount))


def normalize_amount(amount: Decimal | int | float | str) -> Decimal:
    """
    Convert an incoming amount to Decimal for catalog lookup.

    Numerically equal Decimals hash equally, so 10, "10.0" and Decimal("10.00")
    all hit the same entry.

    Raises:
        ValueError: If the amount is not a finite number
    """
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    return value


DEFAULT_CATALOG = Catalog()


def get_catalog() -> Catalog:
    """Get the configured catalog."""
    return DEFAULT_CATALOG
