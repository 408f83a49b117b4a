"""Risk Assessment Engine - PD/LGD/Expected Loss evaluation of healthcare loans"""

import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from sqlalchemy.orm import Session

from paysick_gateway.domain.affordability import calculate_affordability
from paysick_gateway.domain.exceptions import AssessmentNotFoundError, DataSourceUnavailableError, InvalidApplicationError
from paysick_gateway.domain.models import (
    AffordabilityResult,
    ExpectedLoss,
    HealthScore,
    HealthScoreComponents,
    RiskAssessmentParams,
    RiskAssessmentResult,
)
from paysick_gateway.domain.risk_config import RiskModelConfig
from paysick_gateway.domain.scoring import (
    analyze_behavioral_signals,
    calculate_health_payment_score,
    calculate_lgd,
    calculate_max_approved_amount,
    calculate_model_confidence,
    calculate_pd,
    calculate_risk_adjusted_pricing,
    get_recommended_term,
    health_score_band,
    make_risk_decision,
    medical_aid_tier,
)
from paysick_gateway.infrastructure.clients.data_sources import (
    DEFAULT_PROCEDURE_PROFILE,
    UNKNOWN_PROVIDER,
    InternalPaymentHistorySource,
    MedicalAidPremiumEstimator,
    MedicalAidSource,
    MedicationAdherenceSource,
    PaymentHistorySource,
    ProcedureRiskSource,
    ProcedureSource,
    ProviderPerformanceSource,
    ProviderSource,
    SimulatedMedicalAidSource,
    SimulatedMedicationAdherenceSource,
)
from paysick_gateway.infrastructure.database.models import HealthcareAffordability, PatientHealthScore, RiskAssessment
from paysick_gateway.infrastructure.database.repositories import (
    AffordabilityRepository,
    HealthScoreRepository,
    RiskAssessmentRepository,
)
from paysick_gateway.infrastructure.observability.logging import log_assessment
from paysick_gateway.infrastructure.observability.metrics import data_source_fallback_counter, record_assessment
from paysick_gateway.services.events import ASSESSMENT_COMPLETED, EventListener, emit
from paysick_gateway.utils.date_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

NEUTRAL_SCORE = 50
PORTFOLIO_WINDOW_DAYS = 30
PORTFOLIO_TARGETS = {
    "target_pd": 0.032,
    "target_lgd": 0.45,
    "target_el_rate": 0.014,
}


class RiskAssessmentService:
    """
    Healthcare credit risk engine.

    Combines the healthcare bureau score, procedure risk, affordability,
    provider performance and application behaviour into PD and LGD, derives
    expected loss, and from that the decision, price, term and limit.
    Every evaluation is stored as a new immutable assessment.
    """

    def __init__(
        self,
        db: Session,
        config: Optional[RiskModelConfig] = None,
        medical_aid_source: Optional[MedicalAidSource] = None,
        medication_source: Optional[MedicationAdherenceSource] = None,
        payment_history_source: Optional[PaymentHistorySource] = None,
        procedure_source: Optional[ProcedureSource] = None,
        provider_source: Optional[ProviderSource] = None,
        premium_estimator: Optional[MedicalAidPremiumEstimator] = None,
        listeners: Iterable[EventListener] = (),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.config = config or RiskModelConfig()
        self.medical_aid_source = medical_aid_source or SimulatedMedicalAidSource()
        self.medication_source = medication_source or SimulatedMedicationAdherenceSource()
        self.payment_history_source = payment_history_source or InternalPaymentHistorySource(db)
        self.procedure_source = procedure_source or ProcedureRiskSource(db)
        self.provider_source = provider_source or ProviderPerformanceSource(db)
        self.premium_estimator = premium_estimator or MedicalAidPremiumEstimator()
        self.listeners = list(listeners)
        self.clock = clock

        self.health_scores = HealthScoreRepository(db)
        self.affordability = AffordabilityRepository(db)
        self.assessments = RiskAssessmentRepository(db)

    def calculate_risk_assessment(self, params: RiskAssessmentParams) -> RiskAssessmentResult:
        """
        Evaluate one application and persist the assessment.

        Flow:
        1. Health payment score (reused while fresh, else recomputed)
        2. Procedure risk profile
        3. Affordability snapshot
        4. Provider performance
        5. Behavioural signals
        6-8. PD, LGD and expected loss
        9-12. Decision, risk-adjusted rate, term and maximum amount

        Raises:
            InvalidApplicationError: Missing user or non-positive amount
        """
        if not params.user_id:
            raise InvalidApplicationError("user_id", "is required")
        if not params.loan_amount or params.loan_amount <= 0:
            raise InvalidApplicationError("loan_amount", "must be positive")

        start_time = time.time()
        now = self.clock()

        health = self._get_or_compute_health_score(params, now)
        procedure = self._fallback(
            "procedure_risk",
            lambda: self.procedure_source.profile(params.procedure_type, params.icd10_code),
            DEFAULT_PROCEDURE_PROFILE,
        )
        affordability = self._assess_affordability(
            params.user_id,
            params.monthly_income,
            params.existing_debt,
            params.loan_amount,
            params.medical_aid_scheme,
            params.medical_aid_option,
            now,
        )
        provider = self._fallback(
            "provider_performance",
            lambda: self.provider_source.performance(params.provider_id),
            UNKNOWN_PROVIDER,
        )
        behavioral_score = analyze_behavioral_signals(params.application_behavior)

        pd = calculate_pd(
            health_score=health.score,
            procedure_risk=procedure.base_pd_risk,
            affordability_score=affordability.affordability_score,
            provider_score=provider.performance_score,
            behavioral_score=behavioral_score,
            config=self.config,
        )
        lgd = calculate_lgd(
            has_medical_aid=bool(params.medical_aid_scheme),
            aid_tier=medical_aid_tier(params.medical_aid_scheme, params.medical_aid_option),
            procedure_necessity=procedure.necessity_score,
            provider_network=provider.is_network_partner,
            family_support_indicator=health.family_support_indicator,
            config=self.config,
        )

        # Computed from the rounded PD and LGD so that rate == pd * lgd holds exactly on the stored row
        expected_loss_rate = pd.score * lgd.score
        expected_loss = ExpectedLoss(
            exposure=round(params.loan_amount, 2),
            amount=round(expected_loss_rate * params.loan_amount, 2),
            rate=expected_loss_rate,
        )

        result = RiskAssessmentResult(
            assessment_id=uuid.uuid4(),
            application_id=str(params.application_id),
            user_id=params.user_id,
            pd=pd,
            lgd=lgd,
            expected_loss=expected_loss,
            decision=make_risk_decision(expected_loss_rate),
            pricing=calculate_risk_adjusted_pricing(pd.score, lgd.score, self.config),
            recommended_term=get_recommended_term(pd.score, params.loan_amount),
            max_approved_amount=calculate_max_approved_amount(affordability.max_loan_amount, pd.score),
            health_score=health.score,
            affordability_band=affordability.affordability_band,
            model_version=self.config.model_version,
            model_confidence=calculate_model_confidence(health.components, procedure),
            procedure_type=params.procedure_type,
        )
        self.assessments.create(result, created_at=now)

        duration_ms = (time.time() - start_time) * 1000
        record_assessment(result.decision.decision, pd.score)
        log_assessment(
            result.application_id,
            result.user_id,
            result.decision.decision,
            pd.score,
            expected_loss_rate,
            duration_ms,
        )
        emit(
            self.listeners,
            ASSESSMENT_COMPLETED,
            {
                "assessment_id": str(result.assessment_id),
                "application_id": result.application_id,
                "decision": result.decision.decision,
                "pd": pd.score,
                "lgd": lgd.score,
            },
        )
        return result

    def calculate_affordability(
        self,
        user_id: str,
        monthly_income: float,
        existing_debt: float,
        loan_amount: float,
        medical_aid_scheme: Optional[str] = None,
        medical_aid_option: Optional[str] = None,
    ) -> AffordabilityResult:
        """Standalone affordability check; replaces the user's stored snapshot"""
        if not user_id:
            raise InvalidApplicationError("user_id", "is required")
        if loan_amount is None or loan_amount < 0:
            raise InvalidApplicationError("loan_amount", "must not be negative")
        return self._assess_affordability(
            user_id,
            monthly_income,
            existing_debt,
            loan_amount,
            medical_aid_scheme,
            medical_aid_option,
            self.clock(),
        )

    def get_affordability(self, user_id: str) -> Optional[HealthcareAffordability]:
        return self.affordability.get_by_user(user_id)

    def get_risk_assessment(self, application_id: str) -> RiskAssessment:
        """Latest assessment of an application"""
        assessment = self.assessments.get_latest_for_application(str(application_id))
        if assessment is None:
            raise AssessmentNotFoundError(application_id)
        return assessment

    def get_health_score(self, user_id: str) -> Optional[PatientHealthScore]:
        return self.health_scores.get_by_user(user_id)

    def get_portfolio_summary(self) -> Dict[str, Any]:
        """Last 30 days of assessments against portfolio targets"""
        summary = self.assessments.portfolio_summary(self.clock() - timedelta(days=PORTFOLIO_WINDOW_DAYS))
        return {
            "period_days": PORTFOLIO_WINDOW_DAYS,
            "summary": summary,
            "targets": dict(PORTFOLIO_TARGETS),
            "performance_vs_target": {
                "pd_variance": round(summary["avg_pd"] - PORTFOLIO_TARGETS["target_pd"], 4),
                "lgd_variance": round(summary["avg_lgd"] - PORTFOLIO_TARGETS["target_lgd"], 4),
                "el_variance": round(summary["avg_expected_loss_rate"] - PORTFOLIO_TARGETS["target_el_rate"], 4),
            },
        }

    def get_risk_distribution(self) -> List[Dict[str, Any]]:
        return self.assessments.risk_distribution(self.clock() - timedelta(days=PORTFOLIO_WINDOW_DAYS))

    def get_health_score_distribution(self) -> List[Dict[str, Any]]:
        return self.health_scores.band_distribution()

    def get_procedure_risk(self) -> List[Dict[str, Any]]:
        """Top procedure types by exposure over the last 30 days"""
        return self.assessments.procedure_risk(self.clock() - timedelta(days=PORTFOLIO_WINDOW_DAYS))

    def _fallback(self, source: str, fetch: Callable[[], T], default: T) -> T:
        """Neutral default when a data source is down; an assessment never fails on one input"""
        try:
            return fetch()
        except DataSourceUnavailableError as e:
            data_source_fallback_counter.labels(source=source).inc()
            logger.warning(
                f"Data source unavailable, using neutral default: {e}",
                extra={"source": source},
            )
            return default

    def _get_or_compute_health_score(self, params: RiskAssessmentParams, now: datetime) -> HealthScore:
        existing = self.health_scores.get_by_user(params.user_id)
        max_age = timedelta(days=self.config.health_score_max_age_days)

        if existing is not None and now - ensure_utc(existing.score_calculated_at) < max_age:
            return HealthScore(
                score=existing.health_payment_score,
                band=existing.score_band,
                components=HealthScoreComponents(
                    medical_aid=existing.medical_aid_score,
                    medication_adherence=existing.medication_adherence_score,
                    provider_payment=existing.provider_payment_score,
                    procedure_outcome=existing.procedure_outcome_score,
                    healthcare_utilization=existing.healthcare_utilization_score,
                ),
                family_support_indicator=existing.family_support_indicator,
            )

        components = HealthScoreComponents(
            medical_aid=self._fallback(
                "medical_aid",
                lambda: self.medical_aid_source.score(params.medical_aid_scheme),
                NEUTRAL_SCORE,
            ),
            medication_adherence=self._fallback(
                "medication_adherence",
                lambda: self.medication_source.score(params.has_chronic_conditions),
                NEUTRAL_SCORE,
            ),
            provider_payment=self._fallback(
                "payment_history",
                lambda: self.payment_history_source.score(params.user_id),
                NEUTRAL_SCORE,
            ),
        )
        score = calculate_health_payment_score(components, self.config)
        health = HealthScore(
            score=score,
            band=health_score_band(score),
            components=components,
            family_support_indicator=existing.family_support_indicator if existing is not None else 0.5,
        )
        self.health_scores.upsert(
            params.user_id,
            health,
            params.medical_aid_scheme,
            params.medical_aid_option,
            params.has_chronic_conditions,
            calculated_at=now,
        )
        return health

    def _assess_affordability(
        self,
        user_id: str,
        monthly_income: float,
        existing_debt: float,
        loan_amount: float,
        medical_aid_scheme: Optional[str],
        medical_aid_option: Optional[str],
        now: datetime,
    ) -> AffordabilityResult:
        premium = self.premium_estimator.estimate(medical_aid_scheme, medical_aid_option)
        result = calculate_affordability(monthly_income, existing_debt, loan_amount, premium)
        self.affordability.upsert(user_id, result, assessed_at=now)
        return result
