"""
Scoring data sources for the risk engine.

Each source answers one question ("how good is this patient's medical aid",
"how does this provider's book perform") with a 0-100 score or a profile.
Bureau and scheme integrations are simulated until real APIs are contracted;
the internal sources read our own loan book. Their queries run inside a
savepoint so that a failed lookup leaves the caller's transaction usable
(PostgreSQL aborts the whole transaction on a failed statement otherwise).
"""

import math
import random
from datetime import date
from typing import Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from paysick_gateway.domain.affordability import estimate_medical_aid_premium
from paysick_gateway.domain.exceptions import DataSourceUnavailableError
from paysick_gateway.domain.models import ProcedureRiskProfile, ProviderPerformance
from paysick_gateway.domain.scoring import calculate_necessity_score, score_provider_performance
from paysick_gateway.infrastructure.database.repositories import (
    ProcedureRiskRepository,
    ProviderRepository,
    RepaymentRepository,
)

SCHEME_BASE_SCORES = (
    ("discovery", 75),
    ("bonitas", 70),
    ("momentum", 70),
    ("gems", 72),
    ("medihelp", 68),
    ("fedhealth", 67),
)
OTHER_SCHEME_SCORE = 60
UNINSURED_SCORE = 40
NON_CHRONIC_ADHERENCE = 70

DEFAULT_PROCEDURE_PROFILE = ProcedureRiskProfile(
    base_pd_risk=50,
    base_lgd_risk=50,
    necessity_score=0.6,
)
UNKNOWN_PROVIDER = ProviderPerformance(performance_score=50, is_network_partner=False, default_rate=0.05)


class MedicalAidSource(Protocol):
    def score(self, scheme: Optional[str]) -> float: ...


class MedicationAdherenceSource(Protocol):
    def score(self, has_chronic_conditions: bool) -> float: ...


class PaymentHistorySource(Protocol):
    def score(self, user_id: str) -> float: ...


class ProcedureSource(Protocol):
    def profile(self, procedure_type: Optional[str], icd10_code: Optional[str]) -> ProcedureRiskProfile: ...


class ProviderSource(Protocol):
    def performance(self, provider_id: Optional[str]) -> ProviderPerformance: ...


class SimulatedMedicalAidSource:
    """Scheme claims-behaviour score with random variance (placeholder for scheme APIs)"""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def score(self, scheme: Optional[str]) -> float:
        if not scheme:
            return UNINSURED_SCORE

        scheme_lower = scheme.lower()
        for name, base in SCHEME_BASE_SCORES:
            if name in scheme_lower:
                return base + self.rng.randint(0, 14)
        return OTHER_SCHEME_SCORE


class SimulatedMedicationAdherenceSource:
    """Chronic medication pickup consistency (placeholder for pharmacy records)"""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def score(self, has_chronic_conditions: bool) -> float:
        if not has_chronic_conditions:
            return NON_CHRONIC_ADHERENCE
        return 55 + self.rng.randint(0, 29)


class InternalPaymentHistorySource:
    """Repayment behaviour on earlier PaySick loans"""

    def __init__(self, db: Session):
        self.db = db
        self.repayments = RepaymentRepository(db)

    def score(self, user_id: str) -> float:
        """
        New customers score a neutral 50. Otherwise:

            50 + paid_ratio * 40 - min(avg_days_late, 10) * 2 (+10 with more than 3 payments)

        clamped to 0-100. Early payments lower the average and so earn points.
        """
        try:
            with self.db.begin_nested():
                history = self.repayments.payment_history(user_id)
        except SQLAlchemyError as e:
            raise DataSourceUnavailableError(f"Payment history unavailable: {e}") from e

        total = len(history)
        if total == 0:
            return 50

        paid_lateness = [
            (paid_date - scheduled_date).days
            for status, scheduled_date, paid_date in history
            if status == "PAID" and isinstance(paid_date, date)
        ]
        paid_ratio = sum(1 for status, _, _ in history if status == "PAID") / total
        avg_days_late = sum(paid_lateness) / len(paid_lateness) if paid_lateness else 0

        score = 50 + paid_ratio * 40 - min(avg_days_late, 10) * 2
        if total > 3:
            score += 10
        return max(0, min(100, math.floor(score + 0.5)))


class ProcedureRiskSource:
    """Procedure risk weights by ICD-10 code, falling back to a name match"""

    def __init__(self, db: Session):
        self.db = db
        self.procedures = ProcedureRiskRepository(db)

    def profile(self, procedure_type: Optional[str], icd10_code: Optional[str]) -> ProcedureRiskProfile:
        try:
            with self.db.begin_nested():
                row, matched_code = None, None
                if icd10_code:
                    row = self.procedures.find_by_icd10(icd10_code)
                    matched_code = icd10_code if row else None
                if row is None and procedure_type:
                    row = self.procedures.find_by_name(procedure_type)
        except SQLAlchemyError as e:
            raise DataSourceUnavailableError(f"Procedure weights unavailable: {e}") from e

        if row is None:
            return DEFAULT_PROCEDURE_PROFILE

        return ProcedureRiskProfile(
            base_pd_risk=row.base_pd_risk,
            base_lgd_risk=row.base_lgd_risk,
            necessity_score=calculate_necessity_score(row.emergency_factor, row.icd10_category),
            typical_amount_min=row.typical_amount_min,
            typical_amount_max=row.typical_amount_max,
            recovery_time_days=row.recovery_time_days or 0,
            success_rate=row.success_rate or 90,
            icd10_code=matched_code,
        )


class ProviderPerformanceSource:
    """Partnership status and default history of the treating provider"""

    def __init__(self, db: Session):
        self.db = db
        self.providers = ProviderRepository(db)

    def performance(self, provider_id: Optional[str]) -> ProviderPerformance:
        if not provider_id:
            return UNKNOWN_PROVIDER

        try:
            with self.db.begin_nested():
                provider = self.providers.get(provider_id)
                completed, defaulted = self.providers.loan_outcomes(provider_id) if provider else (0, 0)
        except SQLAlchemyError as e:
            raise DataSourceUnavailableError(f"Provider data unavailable: {e}") from e

        if provider is None:
            return UNKNOWN_PROVIDER

        return score_provider_performance(
            is_network_partner=bool(provider.network_partner),
            partnership_tier=provider.partnership_tier,
            completed_plans=completed,
            defaulted_plans=defaulted,
        )


class MedicalAidPremiumEstimator:
    """Monthly premium by plan option until scheme premium feeds exist"""

    def estimate(self, scheme: Optional[str], option: Optional[str]) -> float:
        return estimate_medical_aid_premium(scheme, option)
