"""Amortized repayment schedules for marketplace loans"""

from datetime import date
from typing import List, Optional

from paysick_gateway.domain.models import RepaymentInstallment
from paysick_gateway.utils.date_utils import add_months


def calculate_monthly_payment(principal: float, annual_rate: float, term: int) -> float:
    """
    Flat monthly payment by the standard amortization formula.

        P * r(1+r)^n / ((1+r)^n - 1),  r = annual_rate / 12

    A zero rate degenerates to P / n.
    """
    if term <= 0:
        raise ValueError("term must be positive")

    monthly_rate = annual_rate / 12
    if monthly_rate == 0:
        return principal / term

    growth = (1 + monthly_rate) ** term
    return principal * (monthly_rate * growth) / (growth - 1)


def generate_repayment_schedule(
    principal: float,
    annual_rate: float,
    term: int,
    monthly_payment: Optional[float] = None,
    start_date: Optional[date] = None,
) -> List[RepaymentInstallment]:
    """
    Declining-balance schedule of `term` monthly installments.

    Requirements:
    - Installment i falls i calendar months after start_date (default: today)
    - Every scheduled amount equals the flat monthly payment
    - Interest = remaining principal * annual_rate / 12
    - Principal = monthly payment - interest; remaining principal drops by it

    Portions are rounded to cents for storage; the running balance is kept
    unrounded so the principal portions sum to the principal within rounding.

    Example:
        R 9 000 at 0% over 3 months -> 3 x R 3 000.00, all principal
    """
    if principal <= 0 or term <= 0:
        return []

    if monthly_payment is None:
        monthly_payment = calculate_monthly_payment(principal, annual_rate, term)
    if start_date is None:
        start_date = date.today()

    monthly_rate = annual_rate / 12
    remaining = principal

    installments = []
    for number in range(1, term + 1):
        interest = remaining * monthly_rate
        principal_portion = monthly_payment - interest

        installments.append(
            RepaymentInstallment(
                payment_number=number,
                scheduled_date=add_months(start_date, number),
                scheduled_amount=round(monthly_payment, 2),
                principal_portion=round(principal_portion, 2),
                interest_portion=round(interest, 2),
            )
        )
        remaining -= principal_portion

    return installments
