"""Data access layer for risk and marketplace entities"""

import json
import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import case, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from paysick_gateway.domain.models import (
    AffordabilityResult,
    ApplicationStatus,
    HealthScore,
    OfferStatus,
    OfferTerms,
    RepaymentInstallment,
    RiskAssessmentResult,
    SubmissionParams,
)
from paysick_gateway.infrastructure.database.models import (
    HealthcareAffordability,
    Lender,
    LenderOffer,
    LoanApplication,
    LoanRepayment,
    MarketplaceAuditLog,
    MarketplaceLoan,
    PatientHealthScore,
    ProcedureRiskWeight,
    Provider,
    RiskAssessment,
)

PD_BAND_ORDER = ("very_low", "low", "medium", "high", "very_high")
HEALTH_BAND_ORDER = ("excellent", "good", "fair", "poor")
UNSPECIFIED_PROCEDURE = "unspecified"


def _band_rank(order: Sequence[str], band: str) -> int:
    return order.index(band) if band in order else len(order)


def _rounded(value: Optional[float]) -> Optional[int]:
    return int(round(value)) if value is not None else None


def _upsert(
    db: Session,
    model,
    values: Dict[str, Any],
    conflict_columns: Sequence[str],
    update_columns: Sequence[str],
    where=None,
):
    """
    INSERT ... ON CONFLICT (conflict_columns) DO UPDATE, returning the row id.

    Returns None when the conflicting row exists but `where` excluded it.
    """
    insert = pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
    stmt = insert(model).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(conflict_columns),
        set_={column: stmt.excluded[column] for column in update_columns},
        where=where,
    )
    return db.execute(stmt.returning(model.id)).scalar_one_or_none()


class HealthScoreRepository:
    """Repository for patient health scores"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_user(self, user_id: str) -> Optional[PatientHealthScore]:
        return (
            self.db.query(PatientHealthScore)
            .filter(PatientHealthScore.user_id == user_id)
            .first()
        )

    def band_distribution(self) -> List[Dict[str, Any]]:
        """Patients and average sub-scores per score band, best band first"""
        rows = (
            self.db.query(
                PatientHealthScore.score_band,
                func.count(PatientHealthScore.id),
                func.avg(PatientHealthScore.health_payment_score),
                func.avg(PatientHealthScore.medical_aid_score),
                func.avg(PatientHealthScore.medication_adherence_score),
                func.avg(PatientHealthScore.provider_payment_score),
                func.sum(case((PatientHealthScore.active_medical_aid.is_(True), 1), else_=0)),
            )
            .group_by(PatientHealthScore.score_band)
            .all()
        )
        distribution = [
            {
                "score_band": band,
                "patient_count": count,
                "avg_score": _rounded(avg_score),
                "avg_medical_aid": _rounded(avg_medical_aid),
                "avg_medication": _rounded(avg_medication),
                "avg_provider_payment": _rounded(avg_provider_payment),
                "with_medical_aid": int(with_medical_aid or 0),
            }
            for band, count, avg_score, avg_medical_aid, avg_medication, avg_provider_payment, with_medical_aid in rows
        ]
        return sorted(distribution, key=lambda d: _band_rank(HEALTH_BAND_ORDER, d["score_band"]))

    def upsert(
        self,
        user_id: str,
        health: HealthScore,
        medical_aid_scheme: Optional[str],
        medical_aid_option: Optional[str],
        has_chronic_conditions: bool,
        calculated_at: datetime,
    ) -> PatientHealthScore:
        """Insert or replace the patient's score"""
        components = health.components
        values = {
            "user_id": user_id,
            "health_payment_score": health.score,
            "score_band": health.band,
            "medical_aid_score": components.medical_aid,
            "medication_adherence_score": components.medication_adherence,
            "provider_payment_score": components.provider_payment,
            "procedure_outcome_score": components.procedure_outcome,
            "healthcare_utilization_score": components.healthcare_utilization,
            "chronic_conditions_count": 1 if has_chronic_conditions else 0,
            "active_medical_aid": bool(medical_aid_scheme),
            "medical_aid_scheme": medical_aid_scheme,
            "medical_aid_option": medical_aid_option,
            "family_support_indicator": health.family_support_indicator,
            "score_calculated_at": calculated_at,
            "updated_at": calculated_at,
        }
        row_id = _upsert(
            self.db,
            PatientHealthScore,
            values,
            conflict_columns=["user_id"],
            update_columns=[k for k in values if k != "user_id"],
        )
        return self.db.get(PatientHealthScore, row_id, populate_existing=True)


class AffordabilityRepository:
    """Repository for affordability snapshots"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_user(self, user_id: str) -> Optional[HealthcareAffordability]:
        return (
            self.db.query(HealthcareAffordability)
            .filter(HealthcareAffordability.user_id == user_id)
            .first()
        )

    def upsert(self, user_id: str, result: AffordabilityResult, assessed_at: datetime) -> HealthcareAffordability:
        """Replace the user's snapshot; affordability is current, not historical"""
        values = {
            "user_id": user_id,
            "declared_income": result.monthly_income,
            "monthly_debt_obligations": result.monthly_debt_obligations,
            "medical_aid_premium": result.medical_aid_premium,
            "healthcare_dti": result.healthcare_dti,
            "total_dti": result.total_dti,
            "disposable_income": result.disposable_income,
            "healthcare_capacity": result.healthcare_capacity,
            "affordability_band": result.affordability_band,
            "affordability_score": result.affordability_score,
            "max_monthly_payment": result.max_monthly_payment,
            "max_loan_amount": result.max_loan_amount,
            "assessed_at": assessed_at,
        }
        row_id = _upsert(
            self.db,
            HealthcareAffordability,
            values,
            conflict_columns=["user_id"],
            update_columns=[k for k in values if k != "user_id"],
        )
        return self.db.get(HealthcareAffordability, row_id, populate_existing=True)


class RiskAssessmentRepository:
    """Repository for immutable risk assessments"""

    def __init__(self, db: Session):
        self.db = db

    def create(self, result: RiskAssessmentResult, created_at: datetime) -> RiskAssessment:
        """Persist an assessment; rows are never updated afterwards"""
        pd, lgd = result.pd, result.lgd
        db_assessment = RiskAssessment(
            id=result.assessment_id,
            application_id=result.application_id,
            user_id=result.user_id,
            pd_score=pd.score,
            pd_band=pd.band,
            pd_health_score_component=pd.components.health_score,
            pd_procedure_risk_component=pd.components.procedure_risk,
            pd_affordability_component=pd.components.affordability,
            pd_provider_component=pd.components.provider,
            pd_behavioral_component=pd.components.behavioral,
            lgd_score=lgd.score,
            lgd_band=lgd.band,
            lgd_medical_aid_component=lgd.components.medical_aid_recovery,
            lgd_family_support_component=lgd.components.family_support,
            lgd_procedure_value_component=lgd.components.procedure_value,
            lgd_provider_recovery_component=lgd.components.provider_recovery,
            exposure_at_default=result.expected_loss.exposure,
            expected_loss=result.expected_loss.amount,
            expected_loss_rate=result.expected_loss.rate,
            risk_decision=result.decision.decision,
            decision_reason=result.decision.reason,
            decision_confidence=result.decision.confidence,
            risk_adjusted_rate=result.pricing.final_rate,
            recommended_term_months=result.recommended_term,
            max_approved_amount=result.max_approved_amount,
            health_payment_score=result.health_score,
            procedure_type=result.procedure_type,
            affordability_band=result.affordability_band,
            model_version=result.model_version,
            model_confidence=result.model_confidence,
            created_at=created_at,
        )
        self.db.add(db_assessment)
        self.db.flush()
        return db_assessment

    def get_latest_for_application(self, application_id: str) -> Optional[RiskAssessment]:
        return (
            self.db.query(RiskAssessment)
            .filter(RiskAssessment.application_id == application_id)
            .order_by(RiskAssessment.created_at.desc())
            .first()
        )

    def portfolio_summary(self, since: datetime) -> Dict[str, Any]:
        """Aggregate PD/LGD/EL over assessments created since the cut-off"""
        row = (
            self.db.query(
                func.count(RiskAssessment.id),
                func.avg(RiskAssessment.pd_score),
                func.avg(RiskAssessment.lgd_score),
                func.avg(RiskAssessment.expected_loss_rate),
                func.sum(RiskAssessment.exposure_at_default),
                func.sum(RiskAssessment.expected_loss),
                func.sum(case((RiskAssessment.risk_decision == "approve", 1), else_=0)),
                func.sum(case((RiskAssessment.risk_decision == "decline", 1), else_=0)),
                func.sum(case((RiskAssessment.risk_decision == "review", 1), else_=0)),
            )
            .filter(RiskAssessment.created_at >= since)
            .one()
        )
        return {
            "total_assessments": row[0] or 0,
            "avg_pd": float(row[1] or 0),
            "avg_lgd": float(row[2] or 0),
            "avg_expected_loss_rate": float(row[3] or 0),
            "total_exposure": float(row[4] or 0),
            "total_expected_loss": float(row[5] or 0),
            "approved_count": int(row[6] or 0),
            "declined_count": int(row[7] or 0),
            "review_count": int(row[8] or 0),
        }

    def risk_distribution(self, since: datetime) -> List[Dict[str, Any]]:
        """Assessment counts and averages per PD band, safest band first"""
        rows = (
            self.db.query(
                RiskAssessment.pd_band,
                func.count(RiskAssessment.id),
                func.avg(RiskAssessment.pd_score),
                func.avg(RiskAssessment.expected_loss_rate),
                func.sum(RiskAssessment.exposure_at_default),
            )
            .filter(RiskAssessment.created_at >= since)
            .group_by(RiskAssessment.pd_band)
            .all()
        )
        distribution = [
            {
                "pd_band": band,
                "count": count,
                "avg_pd": float(avg_pd or 0),
                "avg_el_rate": float(avg_el or 0),
                "total_exposure": float(exposure or 0),
            }
            for band, count, avg_pd, avg_el, exposure in rows
        ]
        return sorted(
            distribution,
            key=lambda d: _band_rank(PD_BAND_ORDER, d["pd_band"]),
        )

    def procedure_risk(self, since: datetime, limit: int = 10) -> List[Dict[str, Any]]:
        """Exposure and average PD/LGD/EL per procedure type, largest exposure first"""
        total_exposure = func.sum(RiskAssessment.exposure_at_default)
        rows = (
            self.db.query(
                RiskAssessment.procedure_type,
                func.count(RiskAssessment.id),
                func.avg(RiskAssessment.pd_score),
                func.avg(RiskAssessment.lgd_score),
                func.avg(RiskAssessment.expected_loss_rate),
                total_exposure,
                func.sum(RiskAssessment.expected_loss),
            )
            .filter(RiskAssessment.created_at >= since)
            .group_by(RiskAssessment.procedure_type)
            .order_by(total_exposure.desc())
            .limit(limit)
            .all()
        )
        return [
            {
                "procedure_type": procedure_type or UNSPECIFIED_PROCEDURE,
                "assessments": count,
                "avg_pd": float(avg_pd or 0),
                "avg_lgd": float(avg_lgd or 0),
                "avg_el_rate": float(avg_el or 0),
                "total_exposure": float(exposure or 0),
                "total_expected_loss": float(expected_loss or 0),
            }
            for procedure_type, count, avg_pd, avg_lgd, avg_el, exposure, expected_loss in rows
        ]


class ProcedureRiskRepository:
    """Read-only access to procedure risk weights"""

    def __init__(self, db: Session):
        self.db = db

    def find_by_icd10(self, icd10_code: str) -> Optional[ProcedureRiskWeight]:
        return (
            self.db.query(ProcedureRiskWeight)
            .filter(ProcedureRiskWeight.icd10_code == icd10_code, ProcedureRiskWeight.status == "active")
            .first()
        )

    def find_by_name(self, procedure_type: str) -> Optional[ProcedureRiskWeight]:
        """Case-insensitive substring match on procedure name"""
        pattern = f"%{procedure_type.lower()}%"
        return (
            self.db.query(ProcedureRiskWeight)
            .filter(func.lower(ProcedureRiskWeight.procedure_name).like(pattern), ProcedureRiskWeight.status == "active")
            .first()
        )


class ProviderRepository:
    """Provider partnership data and loan outcomes"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, provider_id: str) -> Optional[Provider]:
        return self.db.get(Provider, provider_id)

    def loan_outcomes(self, provider_id: str) -> Tuple[int, int]:
        """(completed, defaulted) marketplace loans originated at the provider"""
        row = (
            self.db.query(
                func.sum(case((MarketplaceLoan.status == "COMPLETED", 1), else_=0)),
                func.sum(case((MarketplaceLoan.status == "DEFAULTED", 1), else_=0)),
            )
            .filter(MarketplaceLoan.provider_id == provider_id)
            .one()
        )
        return int(row[0] or 0), int(row[1] or 0)


class RepaymentRepository:
    """Repository for loan repayment schedules"""

    def __init__(self, db: Session):
        self.db = db

    def create_schedule(self, loan_id: uuid.UUID, user_id: str, installments: List[RepaymentInstallment]) -> None:
        for inst in installments:
            self.db.add(
                LoanRepayment(
                    loan_id=loan_id,
                    user_id=user_id,
                    payment_number=inst.payment_number,
                    scheduled_date=inst.scheduled_date,
                    scheduled_amount=inst.scheduled_amount,
                    principal_portion=inst.principal_portion,
                    interest_portion=inst.interest_portion,
                )
            )
        self.db.flush()

    def list_for_loan(self, loan_id: uuid.UUID) -> List[LoanRepayment]:
        return (
            self.db.query(LoanRepayment)
            .filter(LoanRepayment.loan_id == loan_id)
            .order_by(LoanRepayment.payment_number.asc())
            .all()
        )

    def payment_history(self, user_id: str) -> List[Tuple[str, date, Optional[date]]]:
        """(status, scheduled_date, paid_date) for every due or settled installment of the user"""
        return (
            self.db.query(LoanRepayment.status, LoanRepayment.scheduled_date, LoanRepayment.paid_date)
            .filter(
                LoanRepayment.user_id == user_id,
                LoanRepayment.status.in_(("PAID", "OVERDUE", "FAILED")),
            )
            .all()
        )


class LenderRepository:
    """Lender directory lookups"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_code(self, code: str, active_only: bool = False) -> Optional[Lender]:
        query = self.db.query(Lender).filter(Lender.code == code)
        if active_only:
            query = query.filter(Lender.active.is_(True))
        return query.first()

    def get_eligible(self, loan_amount: float, risk_score: float) -> List[Lender]:
        """Active lenders whose amount and risk-score ranges cover the loan, cheapest first"""
        return (
            self.db.query(Lender)
            .filter(
                Lender.active.is_(True),
                Lender.min_loan_amount <= loan_amount,
                Lender.max_loan_amount >= loan_amount,
                Lender.min_risk_score <= risk_score,
                Lender.max_risk_score >= risk_score,
            )
            .order_by(Lender.base_rate.asc())
            .all()
        )

    def list_all(self) -> List[Lender]:
        return self.db.query(Lender).order_by(Lender.name.asc()).all()

    def performance(self) -> List[Dict[str, Any]]:
        """Offers made and won per lender"""
        accepted = case((LenderOffer.status == OfferStatus.ACCEPTED, 1), else_=0)
        funded = case((LenderOffer.status == OfferStatus.ACCEPTED, LenderOffer.approved_amount), else_=0)
        rows = (
            self.db.query(
                Lender.code,
                Lender.name,
                func.count(LenderOffer.id),
                func.sum(accepted),
                func.avg(LenderOffer.interest_rate),
                func.sum(funded),
            )
            .outerjoin(LenderOffer, LenderOffer.lender_id == Lender.id)
            .group_by(Lender.id, Lender.code, Lender.name)
            .order_by(Lender.name.asc())
            .all()
        )
        stats = []
        for code, name, offers_made, offers_accepted, avg_rate, funded_volume in rows:
            offers_accepted = int(offers_accepted or 0)
            stats.append(
                {
                    "lender_code": code,
                    "lender_name": name,
                    "offers_made": offers_made,
                    "offers_accepted": offers_accepted,
                    "acceptance_rate": round(offers_accepted / offers_made, 4) if offers_made else 0.0,
                    "avg_offer_rate": round(float(avg_rate), 4) if avg_rate is not None else None,
                    "funded_volume": float(funded_volume or 0),
                }
            )
        return stats


class ApplicationRepository:
    """Repository for marketplace loan applications"""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        params: SubmissionParams,
        risk_tier: str,
        submitted_at: datetime,
        offers_deadline: datetime,
    ) -> LoanApplication:
        db_application = LoanApplication(
            id=uuid.UUID(str(params.application_id)) if params.application_id else uuid.uuid4(),
            user_id=params.user_id,
            provider_id=params.provider_id,
            procedure_type=params.procedure_type,
            procedure_code=params.procedure_code,
            procedure_description=params.procedure_description,
            loan_amount=params.loan_amount,
            requested_term=params.requested_term,
            risk_score=params.risk_score,
            risk_tier=risk_tier,
            affordability_score=params.affordability_score,
            debt_to_income_ratio=params.debt_to_income_ratio,
            monthly_income=params.monthly_income,
            employment_status=params.employment_status,
            employment_duration_months=params.employment_duration_months,
            recommended_rate=params.recommended_rate,
            recommended_term=params.recommended_term or params.requested_term,
            recommended_monthly_payment=params.recommended_monthly_payment,
            bureau_check_id=params.bureau_check_id,
            bureau_check_date=submitted_at if params.bureau_check_id else None,
            bureau_score=params.bureau_score,
            status=ApplicationStatus.SUBMITTED,
            submitted_at=submitted_at,
            offers_deadline=offers_deadline,
            ip_address=params.ip_address,
            user_agent=params.user_agent,
        )
        self.db.add(db_application)
        self.db.flush()
        return db_application

    def get(self, application_id: uuid.UUID) -> Optional[LoanApplication]:
        return self.db.get(LoanApplication, application_id)

    def get_for_update(self, application_id: uuid.UUID) -> Optional[LoanApplication]:
        """Row-locked read (SELECT ... FOR UPDATE) for the accept transaction"""
        return (
            self.db.query(LoanApplication)
            .filter(LoanApplication.id == application_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def get_for_user(self, application_id: uuid.UUID, user_id: str) -> Optional[LoanApplication]:
        return (
            self.db.query(LoanApplication)
            .filter(LoanApplication.id == application_id, LoanApplication.user_id == user_id)
            .first()
        )

    def list_for_user(self, user_id: str) -> List[Tuple[LoanApplication, int, Optional[float]]]:
        """Applications with their pending offer count and best pending rate"""
        pending = LenderOffer.status == OfferStatus.PENDING
        return (
            self.db.query(
                LoanApplication,
                func.count(LenderOffer.id).filter(pending),
                func.min(LenderOffer.interest_rate).filter(pending),
            )
            .outerjoin(LenderOffer, LenderOffer.application_id == LoanApplication.id)
            .filter(LoanApplication.user_id == user_id)
            .group_by(LoanApplication.id)
            .order_by(LoanApplication.submitted_at.desc())
            .all()
        )

    def list_open(self) -> List[Tuple[LoanApplication, int]]:
        """Applications still collecting or awaiting selection of offers, with offer counts"""
        return (
            self.db.query(LoanApplication, func.count(LenderOffer.id))
            .outerjoin(LenderOffer, LenderOffer.application_id == LoanApplication.id)
            .filter(LoanApplication.status.in_(ApplicationStatus.OPEN))
            .group_by(LoanApplication.id)
            .order_by(LoanApplication.submitted_at.desc())
            .all()
        )

    def mark_underwriting(self, application_id: uuid.UUID, at: datetime) -> int:
        """SUBMITTED -> UNDERWRITING; a no-op once offers have arrived"""
        return (
            self.db.query(LoanApplication)
            .filter(LoanApplication.id == application_id, LoanApplication.status == ApplicationStatus.SUBMITTED)
            .update({"status": ApplicationStatus.UNDERWRITING, "underwriting_completed_at": at})
        )

    def mark_offers_received(self, application_id: uuid.UUID) -> int:
        """SUBMITTED|UNDERWRITING -> OFFERS_RECEIVED on the first offer"""
        return (
            self.db.query(LoanApplication)
            .filter(
                LoanApplication.id == application_id,
                LoanApplication.status.in_((ApplicationStatus.SUBMITTED, ApplicationStatus.UNDERWRITING)),
            )
            .update({"status": ApplicationStatus.OFFERS_RECEIVED}, synchronize_session="fetch")
        )

    def select_offer(self, application_id: uuid.UUID, offer_id: uuid.UUID, at: datetime) -> int:
        """Compare-and-set to OFFER_SELECTED; 0 rows means another offer already won"""
        return (
            self.db.query(LoanApplication)
            .filter(
                LoanApplication.id == application_id,
                LoanApplication.status != ApplicationStatus.OFFER_SELECTED,
                LoanApplication.selected_offer_id.is_(None),
            )
            .update(
                {
                    "status": ApplicationStatus.OFFER_SELECTED,
                    "selected_offer_id": offer_id,
                    "decision_at": at,
                },
                synchronize_session="fetch",
            )
        )

    def stats(self) -> Dict[str, Any]:
        """Marketplace overview counters"""

        def count_status(status: str) -> int:
            return self.db.query(func.count(LoanApplication.id)).filter(LoanApplication.status == status).scalar()

        active_loans = self.db.query(func.count(MarketplaceLoan.id)).filter(MarketplaceLoan.status == "ACTIVE").scalar()
        total_loaned = (
            self.db.query(func.coalesce(func.sum(MarketplaceLoan.principal_amount), 0))
            .filter(MarketplaceLoan.status == "ACTIVE")
            .scalar()
        )
        return {
            "pending_applications": count_status(ApplicationStatus.SUBMITTED),
            "awaiting_selection": count_status(ApplicationStatus.OFFERS_RECEIVED),
            "active_loans": active_loans,
            "total_loaned": float(total_loaned),
            "active_lenders": self.db.query(func.count(Lender.id)).filter(Lender.active.is_(True)).scalar(),
            "pending_offers": self.db.query(func.count(LenderOffer.id))
            .filter(LenderOffer.status == OfferStatus.PENDING)
            .scalar(),
        }


class OfferRepository:
    """Repository for lender offers"""

    def __init__(self, db: Session):
        self.db = db

    def upsert_offer(
        self,
        application_id: uuid.UUID,
        lender_id: uuid.UUID,
        terms: OfferTerms,
        expires_at: datetime,
        now: datetime,
        lender_notes: Optional[str] = None,
        conditions: Optional[str] = None,
    ) -> Optional[uuid.UUID]:
        """
        Create the lender's PENDING offer or refresh it in place.

        Keyed on (application, lender) so replays never duplicate. An offer
        that already left PENDING is not touched and None is returned.
        """
        values = {
            "application_id": application_id,
            "lender_id": lender_id,
            "approved_amount": terms.amount,
            "interest_rate": terms.rate,
            "term": terms.term,
            "monthly_payment": terms.monthly_payment,
            "total_repayable": terms.total_repayable,
            "origination_fee": terms.origination_fee,
            "status": OfferStatus.PENDING,
            "expires_at": expires_at,
            "lender_notes": lender_notes,
            "conditions": conditions,
            "updated_at": now,
        }
        return _upsert(
            self.db,
            LenderOffer,
            values,
            conflict_columns=["application_id", "lender_id"],
            update_columns=[
                "approved_amount", "interest_rate", "term", "monthly_payment", "total_repayable",
                "origination_fee", "expires_at", "lender_notes", "conditions", "updated_at",
            ],
            where=LenderOffer.status == OfferStatus.PENDING,
        )

    def get(self, offer_id: uuid.UUID) -> Optional[LenderOffer]:
        return self.db.get(LenderOffer, offer_id, populate_existing=True)

    def list_for_application(self, application_id: uuid.UUID) -> List[Tuple[LenderOffer, Lender]]:
        """Offers with their lender, cheapest first"""
        return (
            self.db.query(LenderOffer, Lender)
            .join(Lender, LenderOffer.lender_id == Lender.id)
            .filter(LenderOffer.application_id == application_id)
            .order_by(LenderOffer.interest_rate.asc())
            .populate_existing()
            .all()
        )

    def accept(self, offer_id: uuid.UUID, at: datetime) -> int:
        """Compare-and-set PENDING -> ACCEPTED"""
        return (
            self.db.query(LenderOffer)
            .filter(LenderOffer.id == offer_id, LenderOffer.status == OfferStatus.PENDING)
            .update({"status": OfferStatus.ACCEPTED, "responded_at": at}, synchronize_session="fetch")
        )

    def decline_others(self, application_id: uuid.UUID, offer_id: uuid.UUID, reason: str, at: datetime) -> List[uuid.UUID]:
        """Decline every other PENDING offer of the application, returning their ids"""
        declined = [
            row[0]
            for row in self.db.query(LenderOffer.id)
            .filter(
                LenderOffer.application_id == application_id,
                LenderOffer.id != offer_id,
                LenderOffer.status == OfferStatus.PENDING,
            )
            .all()
        ]
        if declined:
            (
                self.db.query(LenderOffer)
                .filter(LenderOffer.id.in_(declined), LenderOffer.status == OfferStatus.PENDING)
                .update(
                    {"status": OfferStatus.DECLINED, "responded_at": at, "decline_reason": reason},
                    synchronize_session="fetch",
                )
            )
        return declined


class LoanRepository:
    """Repository for marketplace loans"""

    def __init__(self, db: Session):
        self.db = db

    def create_from_offer(
        self,
        offer: LenderOffer,
        application: LoanApplication,
        first_payment_date: date,
        maturity_date: date,
    ) -> MarketplaceLoan:
        db_loan = MarketplaceLoan(
            application_id=application.id,
            offer_id=offer.id,
            lender_id=offer.lender_id,
            user_id=application.user_id,
            provider_id=application.provider_id,
            principal_amount=offer.approved_amount,
            interest_rate=offer.interest_rate,
            term=offer.term,
            monthly_payment=offer.monthly_payment,
            total_repayable=offer.total_repayable,
            origination_fee=offer.origination_fee,
            total_fees=offer.origination_fee,
            outstanding_principal=offer.approved_amount,
            total_outstanding=round(offer.approved_amount + offer.origination_fee, 2),
            first_payment_date=first_payment_date,
            maturity_date=maturity_date,
        )
        self.db.add(db_loan)
        self.db.flush()
        return db_loan

    def get_for_user(self, loan_id: uuid.UUID, user_id: str) -> Optional[MarketplaceLoan]:
        return (
            self.db.query(MarketplaceLoan)
            .filter(MarketplaceLoan.id == loan_id, MarketplaceLoan.user_id == user_id)
            .first()
        )

    def count_for_application(self, application_id: uuid.UUID) -> int:
        return (
            self.db.query(func.count(MarketplaceLoan.id))
            .filter(MarketplaceLoan.application_id == application_id)
            .scalar()
        )

    def list_for_user(self, user_id: str) -> List[Tuple[MarketplaceLoan, int]]:
        """Loans with their number of completed repayments"""
        completed = LoanRepayment.status == "PAID"
        return (
            self.db.query(MarketplaceLoan, func.count(LoanRepayment.id).filter(completed))
            .outerjoin(LoanRepayment, LoanRepayment.loan_id == MarketplaceLoan.id)
            .filter(MarketplaceLoan.user_id == user_id)
            .group_by(MarketplaceLoan.id)
            .order_by(MarketplaceLoan.created_at.desc())
            .all()
        )


class AuditRepository:
    """Append-only marketplace audit trail"""

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def _jsonable(values: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if values is None:
            return None
        return json.loads(json.dumps(values, default=str))

    def log(
        self,
        entity_type: str,
        entity_id: object,
        action: str,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        performed_by: Optional[str] = None,
        performed_by_type: str = "system",
    ) -> MarketplaceAuditLog:
        entry = MarketplaceAuditLog(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            old_values=self._jsonable(old_values),
            new_values=self._jsonable(new_values),
            performed_by=performed_by,
            performed_by_type=performed_by_type,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def list_for_entity(self, entity_type: str, entity_id: object) -> List[MarketplaceAuditLog]:
        return (
            self.db.query(MarketplaceAuditLog)
            .filter(MarketplaceAuditLog.entity_type == entity_type, MarketplaceAuditLog.entity_id == str(entity_id))
            .all()
        )
