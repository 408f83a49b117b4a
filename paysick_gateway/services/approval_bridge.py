"""Approval Bridge - hands loans approved upstream to the marketplace"""

import random
from typing import List, Optional, Protocol, Tuple

from paysick_gateway.domain.installments import calculate_monthly_payment
from paysick_gateway.domain.marketplace import get_risk_tier
from paysick_gateway.domain.models import AcceptedOffer, ApprovedLoan, SubmissionParams, SubmissionResult
from paysick_gateway.domain.risk_config import MarketplaceConfig
from paysick_gateway.infrastructure.database.models import Lender, LenderOffer
from paysick_gateway.services.marketplace import MarketplaceAuctionService

DEFAULT_EMPLOYMENT_STATUS = "UNKNOWN"


class RiskScoreSource(Protocol):
    def score(self, loan: ApprovedLoan) -> float: ...


class PlaceholderRiskScoreSource:
    """Uniform integer in [50, 80] until upstream approvals carry a real score"""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def score(self, loan: ApprovedLoan) -> float:
        return self.rng.randint(50, 80)


def default_rate(risk_score: float, config: MarketplaceConfig = MarketplaceConfig()) -> float:
    """Bridge base rate plus the marketplace premium for the risk tier: 20% / 23% / 28%"""
    return round(config.bridge_base_rate + config.tier_premiums[get_risk_tier(risk_score)], 4)


class LoanApprovalBridge:
    """Fills underwriting gaps of an approved loan and submits it; holds no state"""

    def __init__(self, auction: MarketplaceAuctionService, risk_score_source: Optional[RiskScoreSource] = None):
        self.auction = auction
        self.risk_score_source = risk_score_source or PlaceholderRiskScoreSource()
        self.config = auction.config

    def send_to_marketplace(self, loan: ApprovedLoan) -> SubmissionResult:
        risk_score = loan.existing_risk_score
        if risk_score is None:
            risk_score = self.risk_score_source.score(loan)

        rate = loan.existing_recommended_rate or default_rate(risk_score, self.config)
        term = loan.existing_recommended_term or loan.requested_term
        monthly_payment = loan.existing_monthly_payment
        if monthly_payment is None:
            monthly_payment = round(calculate_monthly_payment(loan.loan_amount, rate, term), 2)

        return self.auction.submit_to_marketplace(
            SubmissionParams(
                user_id=loan.user_id,
                procedure_type=loan.procedure_type,
                loan_amount=loan.loan_amount,
                requested_term=loan.requested_term,
                provider_id=loan.provider_id,
                procedure_code=loan.procedure_code,
                procedure_description=loan.procedure_description,
                application_id=loan.application_id,
                risk_score=risk_score,
                affordability_score=(
                    loan.existing_affordability_score
                    if loan.existing_affordability_score is not None
                    else self.config.default_affordability_score
                ),
                debt_to_income_ratio=loan.existing_debt_to_income_ratio,
                monthly_income=loan.existing_monthly_income or 0,
                employment_status=loan.existing_employment_status or DEFAULT_EMPLOYMENT_STATUS,
                employment_duration_months=loan.existing_employment_duration_months,
                recommended_rate=rate,
                recommended_term=term,
                recommended_monthly_payment=monthly_payment,
                bureau_check_id=loan.bureau_check_id,
                bureau_score=loan.bureau_score,
                ip_address=loan.ip_address,
                user_agent=loan.user_agent,
            )
        )

    def quick_submit(
        self,
        user_id: str,
        provider_id: Optional[str],
        procedure_type: str,
        loan_amount: float,
        term: int,
    ) -> SubmissionResult:
        return self.send_to_marketplace(
            ApprovedLoan(
                user_id=user_id,
                provider_id=provider_id,
                procedure_type=procedure_type,
                loan_amount=loan_amount,
                requested_term=term,
            )
        )

    def get_offers(self, application_id: object) -> List[Tuple[LenderOffer, Lender]]:
        return self.auction.get_application_offers(application_id)

    def accept_offer(self, offer_id: object, user_id: str) -> AcceptedOffer:
        return self.auction.accept_offer(offer_id, user_id)
