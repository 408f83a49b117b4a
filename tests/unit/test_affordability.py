"""Unit tests for healthcare affordability"""

import pytest
from paysick_gateway.domain.affordability import calculate_affordability, estimate_medical_aid_premium


def test_affordability_low_band():
    """Test requested payment between 75% and 100% of capacity"""
    result = calculate_affordability(monthly_income=15000, existing_debt=2000, loan_amount=9000)

    assert result.healthcare_dti == pytest.approx(0.1333)
    assert result.disposable_income == 13000
    assert result.healthcare_capacity == 3900  # 30% of disposable
    assert result.requested_monthly_payment == 3000  # over 3 months
    assert result.affordability_band == "low"
    assert result.affordability_score == 45
    assert result.max_loan_amount == pytest.approx(9945)  # 3900 * 3 * 0.85


def test_affordability_high_band():
    result = calculate_affordability(monthly_income=30000, existing_debt=0, loan_amount=9000)

    assert result.healthcare_capacity == 9000
    assert result.affordability_band == "high"
    assert result.affordability_score == 85


def test_affordability_medium_band():
    result = calculate_affordability(monthly_income=20000, existing_debt=0, loan_amount=12000)

    # capacity 6000, requested 4000 = 66%
    assert result.affordability_band == "medium"
    assert result.affordability_score == 65


def test_affordability_premium_counts_as_debt():
    result = calculate_affordability(
        monthly_income=20000, existing_debt=1000, loan_amount=6000, medical_aid_premium=3000
    )

    assert result.healthcare_dti == pytest.approx(0.2)
    assert result.disposable_income == 16000
    assert result.medical_aid_premium == 3000


def test_affordability_zero_income():
    """Test zero income: DTI 1.0 and no capacity"""
    result = calculate_affordability(monthly_income=0, existing_debt=0, loan_amount=5000)

    assert result.healthcare_dti == 1.0
    assert result.healthcare_capacity == 0
    assert result.max_loan_amount == 0
    assert result.affordability_band == "insufficient"
    assert result.affordability_score == 20


def test_affordability_capacity_never_negative():
    result = calculate_affordability(monthly_income=10000, existing_debt=12000, loan_amount=5000)

    assert result.disposable_income == -2000
    assert result.healthcare_capacity == 0
    assert result.affordability_band == "insufficient"


@pytest.mark.parametrize(
    "scheme,option,premium",
    [
        ("Discovery", "Classic Comprehensive", 4500),
        ("Discovery", "Classic Saver", 3000),
        ("Bonitas", None, 2000),
        ("Momentum", "Ingwe", 2000),
        ("Bonitas", "BonSmart", 1500),
        (None, "Executive", 0),
    ],
)
def test_estimate_medical_aid_premium(scheme, option, premium):
    assert estimate_medical_aid_premium(scheme, option) == premium
