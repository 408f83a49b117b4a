"""Marketplace rules - risk tiers, lender pricing and offer terms"""

from typing import Optional

from paysick_gateway.domain.installments import calculate_monthly_payment
from paysick_gateway.domain.models import LenderType, OfferTerms, RiskTier
from paysick_gateway.domain.risk_config import MarketplaceConfig

MIN_LOAN_AMOUNT = 1000
MAX_LOAN_AMOUNT = 500000
MIN_TERM_MONTHS = 3
MAX_TERM_MONTHS = 60


def get_risk_tier(score: Optional[float]) -> str:
    """Score >= 70 LOW, >= 40 MEDIUM, else HIGH; no score is MEDIUM"""
    if score is None:
        return RiskTier.MEDIUM
    if score >= 70:
        return RiskTier.LOW
    if score >= 40:
        return RiskTier.MEDIUM
    return RiskTier.HIGH


def tier_premium(lender, tier: str, config: MarketplaceConfig = MarketplaceConfig()) -> float:
    """Lender's premium for a risk tier, falling back to the marketplace defaults"""
    premiums = {
        RiskTier.LOW: lender.risk_premium_low,
        RiskTier.MEDIUM: lender.risk_premium_mid,
        RiskTier.HIGH: lender.risk_premium_high,
    }
    premium = premiums.get(tier)
    return config.tier_premiums[tier] if not premium else float(premium)


def calculate_lender_rate(
    lender,
    risk_score: Optional[float],
    config: MarketplaceConfig = MarketplaceConfig(),
) -> float:
    """Lender base rate plus the premium for the applicant's risk tier"""
    rate = float(lender.base_rate) + tier_premium(lender, get_risk_tier(risk_score), config)
    return round(rate, 4)


def is_auto_accepting(lender) -> bool:
    """Balance-sheet lenders fund every eligible loan without a round trip"""
    return lender.type == LenderType.PAYSICK_BALANCE_SHEET


def resolve_offer_rate(
    adjusted_rate: Optional[float],
    recommended_rate: Optional[float],
    lender,
    risk_score: Optional[float],
    config: MarketplaceConfig = MarketplaceConfig(),
) -> float:
    """Lender's adjusted rate, else the application's recommended rate, else the lender tier rate"""
    if adjusted_rate:
        return float(adjusted_rate)
    if recommended_rate:
        return float(recommended_rate)
    return calculate_lender_rate(lender, risk_score, config)


def resolve_offer_term(
    adjusted_term: Optional[int],
    recommended_term: Optional[int],
    requested_term: int,
) -> int:
    return adjusted_term or recommended_term or requested_term


def build_offer_terms(
    amount: float,
    rate: float,
    term: int,
    config: MarketplaceConfig = MarketplaceConfig(),
) -> OfferTerms:
    """Price an offer: amortized payment, total repayable and origination fee"""
    monthly_payment = round(calculate_monthly_payment(amount, rate, term), 2)
    return OfferTerms(
        amount=amount,
        rate=rate,
        term=term,
        monthly_payment=monthly_payment,
        total_repayable=round(monthly_payment * term, 2),
        origination_fee=round(amount * config.origination_fee_rate, 2),
    )
