"""
Tests for credit pricing
"""

from decimal import Decimal

import pytest

from app.services.pricing import (
    CREDIT_PACKAGES,
    calculate_actual_cost,
    calculate_credit_cost,
    format_credits,
    get_credit_package,
)


@pytest.mark.parametrize("input_tokens,output_tokens,expected", [
    (0, 0, Decimal("0.00")),
    (1, 0, Decimal("1.00")),
    (120, 340, Decimal("460.00")),
    (1_000_000, 250_000, Decimal("1250000.00")),
])
def test_cost_is_one_credit_per_token(input_tokens, output_tokens, expected):
    assert calculate_credit_cost(input_tokens, output_tokens) == expected


def test_cost_has_two_decimal_places():
    cost = calculate_credit_cost(120, 340)
    assert str(cost) == "460.00"


def test_cost_of_nothing_is_zero():
    assert calculate_credit_cost(0, 0) == 0


def test_actual_cost_usd():
    # 1M input at $1.75 + 1M output at $14
    assert calculate_actual_cost(1_000_000, 1_000_000) == Decimal("15.75")
    assert calculate_actual_cost(0, 0) == 0


def test_format_credits():
    assert format_credits(Decimal("950")) == "950"
    assert format_credits(10_000) == "10.0K"
    assert format_credits(Decimal("12500.00")) == "12.5K"
    assert format_credits(1_500_000) == "1.5M"
    assert format_credits(Decimal("-2500")) == "-2.5K"


def test_credit_packages():
    assert [p.id for p in CREDIT_PACKAGES] == ["credits_10k", "credits_50k", "credits_100k"]
    popular = [p for p in CREDIT_PACKAGES if p.popular]
    assert len(popular) == 1 and popular[0].credits == 50_000

    package = get_credit_package("credits_100k")
    assert package.credits == 100_000
    assert package.price_gbp == Decimal("40.00")
    assert get_credit_package("credits_1b") is None
