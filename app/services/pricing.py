"""
Pricing - converts token usage into ledger credits.

One token (input or output) is one credit. The sum is rounded up to the
next 0.01 so usage is never under-billed.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING
from typing import List, Optional

CREDITS_PER_TOKEN = Decimal("1")
CREDIT_QUANTUM = Decimal("0.01")

# Ledger constants
SIGNUP_BONUS = Decimal("10000")
MAX_NEGATIVE_BALANCE = Decimal("-10000")
MIN_BALANCE_FOR_NEW_WORK = Decimal("-5000")

# Provider cost in USD per million tokens (informational only)
INPUT_COST_PER_MILLION_USD = Decimal("1.75")
OUTPUT_COST_PER_MILLION_USD = Decimal("14")


@dataclass(frozen=True)
class CreditPackage:
    id: str
    credits: int
    price_gbp: Decimal
    label: str
    popular: bool = False


CREDIT_PACKAGES: List[CreditPackage] = [
    CreditPackage(id="credits_10k", credits=10_000, price_gbp=Decimal("5.00"), label="10K Credits"),
    CreditPackage(id="credits_50k", credits=50_000, price_gbp=Decimal("22.50"), label="50K Credits", popular=True),
    CreditPackage(id="credits_100k", credits=100_000, price_gbp=Decimal("40.00"), label="100K Credits"),
]


def get_credit_package(package_id: str) -> Optional[CreditPackage]:
    for package in CREDIT_PACKAGES:
        if package.id == package_id:
            return package
    return None


def calculate_credit_cost(input_tokens: int, output_tokens: int) -> Decimal:
    """Credits charged for a generation. cost(0, 0) == 0."""
    raw = Decimal(max(input_tokens, 0) + max(output_tokens, 0)) * CREDITS_PER_TOKEN
    return raw.quantize(CREDIT_QUANTUM, rounding=ROUND_CEILING)


def calculate_actual_cost(input_tokens: int, output_tokens: int) -> Decimal:
    """What the provider charges us, in USD."""
    million = Decimal(1_000_000)
    return (
        Decimal(input_tokens) / million * INPUT_COST_PER_MILLION_USD
        + Decimal(output_tokens) / million * OUTPUT_COST_PER_MILLION_USD
    )


def format_credits(credits) -> str:
    """Compact display form: 950 -> "950", 10000 -> "10.0K", 1500000 -> "1.5M"."""
    value = Decimal(credits)
    sign = "-" if value < 0 else ""
    value = abs(value)
    if value >= 1_000_000:
        return f"{sign}{value / 1_000_000:.1f}M"
    if value >= 1_000:
        return f"{sign}{value / 1_000:.1f}K"
    return f"{sign}{value.normalize():f}"
