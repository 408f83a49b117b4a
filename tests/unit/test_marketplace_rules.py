"""Unit tests for marketplace tiering and offer pricing"""

import pytest
from types import SimpleNamespace
from paysick_gateway.domain.installments import calculate_monthly_payment
from paysick_gateway.domain.marketplace import (
    build_offer_terms,
    calculate_lender_rate,
    get_risk_tier,
    is_auto_accepting,
    resolve_offer_rate,
    resolve_offer_term,
)
from paysick_gateway.domain.models import LenderType, RiskTier
from paysick_gateway.services.approval_bridge import default_rate


@pytest.fixture
def lender():
    return SimpleNamespace(
        type=LenderType.BANK,
        base_rate=0.18,
        risk_premium_low=0.02,
        risk_premium_mid=None,
        risk_premium_high=0.12,
    )


@pytest.mark.parametrize(
    "score,tier",
    [(100, RiskTier.LOW), (70, RiskTier.LOW), (69.9, RiskTier.MEDIUM), (40, RiskTier.MEDIUM), (39, RiskTier.HIGH), (0, RiskTier.HIGH)],
)
def test_risk_tier_thresholds(score, tier):
    assert get_risk_tier(score) == tier


def test_missing_risk_score_is_medium():
    assert get_risk_tier(None) == RiskTier.MEDIUM


def test_lender_rate_uses_tier_premium(lender):
    assert calculate_lender_rate(lender, 75) == pytest.approx(0.20)
    assert calculate_lender_rate(lender, 10) == pytest.approx(0.30)


def test_lender_rate_falls_back_to_default_premium(lender):
    """Test unset premium uses the marketplace default (5% for MEDIUM)"""
    assert calculate_lender_rate(lender, 50) == pytest.approx(0.23)
    assert calculate_lender_rate(lender, None) == pytest.approx(0.23)


def test_offer_rate_resolution_order(lender):
    assert resolve_offer_rate(0.19, 0.22, lender, 75) == 0.19
    assert resolve_offer_rate(None, 0.22, lender, 75) == 0.22
    assert resolve_offer_rate(None, None, lender, 75) == pytest.approx(0.20)


def test_offer_term_resolution_order():
    assert resolve_offer_term(9, 6, 12) == 9
    assert resolve_offer_term(None, 6, 12) == 6
    assert resolve_offer_term(None, None, 12) == 12


def test_build_offer_terms():
    """Test amortized payment, total and 2.5% origination fee"""
    terms = build_offer_terms(20000, 0.20, 6)

    assert terms.monthly_payment == round(calculate_monthly_payment(20000, 0.20, 6), 2)
    assert terms.total_repayable == round(terms.monthly_payment * 6, 2)
    assert terms.origination_fee == 500
    assert terms.total_repayable > 20000


def test_only_balance_sheet_lenders_auto_accept(lender):
    assert is_auto_accepting(lender) is False
    assert is_auto_accepting(SimpleNamespace(type=LenderType.PAYSICK_BALANCE_SHEET)) is True


@pytest.mark.parametrize("score,rate", [(80, 0.20), (70, 0.20), (69, 0.23), (40, 0.23), (39, 0.28)])
def test_bridge_default_rate(score, rate):
    assert default_rate(score) == rate
