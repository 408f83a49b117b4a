"""Healthcare affordability - debt service capacity for medical loans"""

from typing import Optional

from paysick_gateway.domain.models import AffordabilityResult

HEALTHCARE_CAPACITY_SHARE = 0.30
ASSUMED_TERM_MONTHS = 3
INTEREST_BUFFER = 0.85

PREMIUM_ESTIMATES = (
    ("comprehensive", 4500),
    ("classic", 3000),
    ("essential", 2000),
    ("smart", 1500),
    ("basic", 1000),
)
DEFAULT_PREMIUM = 2000


def estimate_medical_aid_premium(scheme: Optional[str], option: Optional[str]) -> float:
    """Rough monthly premium by plan option; no scheme means no premium"""
    if not scheme:
        return 0

    option_lower = (option or "essential").lower()
    for tier, premium in PREMIUM_ESTIMATES:
        if tier in option_lower:
            return premium
    return DEFAULT_PREMIUM


def calculate_affordability(
    monthly_income: float,
    existing_debt: float,
    loan_amount: float,
    medical_aid_premium: float = 0,
) -> AffordabilityResult:
    """
    Healthcare-specific affordability.

    - DTI includes the medical aid premium; zero income yields DTI 1.0
    - Healthcare capacity is 30% of disposable income, never negative
    - The requested loan is assumed repaid over 3 months
    - Max loan keeps 15% headroom for interest

    Bands compare the requested monthly payment to capacity:
    <= 50% high (85), <= 75% medium (65), <= 100% low (45), else insufficient (20).
    """
    income = monthly_income or 0
    debt = existing_debt or 0
    premium = medical_aid_premium or 0

    healthcare_dti = (debt + premium) / income if income > 0 else 1.0
    disposable_income = income - debt - premium
    healthcare_capacity = max(0.0, disposable_income * HEALTHCARE_CAPACITY_SHARE)

    max_monthly_payment = healthcare_capacity
    max_loan_amount = max_monthly_payment * ASSUMED_TERM_MONTHS * INTEREST_BUFFER

    requested_monthly_payment = loan_amount / ASSUMED_TERM_MONTHS

    if requested_monthly_payment <= healthcare_capacity * 0.5:
        band, score = "high", 85
    elif requested_monthly_payment <= healthcare_capacity * 0.75:
        band, score = "medium", 65
    elif requested_monthly_payment <= healthcare_capacity:
        band, score = "low", 45
    else:
        band, score = "insufficient", 20

    return AffordabilityResult(
        monthly_income=income,
        monthly_debt_obligations=debt,
        medical_aid_premium=premium,
        healthcare_dti=round(healthcare_dti, 4),
        total_dti=round(healthcare_dti, 4),
        disposable_income=round(disposable_income, 2),
        healthcare_capacity=round(healthcare_capacity, 2),
        requested_monthly_payment=round(requested_monthly_payment, 2),
        affordability_band=band,
        affordability_score=score,
        max_monthly_payment=round(max_monthly_payment, 2),
        max_loan_amount=round(max_loan_amount, 2),
    )
