"""/v1/risk - healthcare risk assessment and portfolio reporting"""

import logging
import uuid
from dataclasses import asdict
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from paysick_gateway.api.v1.schemas import (
    DecisionSchema,
    ExpectedLossSchema,
    HealthScoreDistributionResponse,
    HealthScoreResponse,
    PortfolioSummaryResponse,
    PricingSchema,
    ProcedureRiskResponse,
    RiskAssessmentRequest,
    RiskAssessmentResponse,
    RiskDistributionResponse,
    ScoreBreakdown,
    StoredAssessmentResponse,
)
from paysick_gateway.api.dependencies import (
    Caller,
    get_caller,
    get_request_id,
    get_risk_service,
    require_admin,
    resolve_subject,
)
from paysick_gateway.infrastructure.database.session import get_db
from paysick_gateway.services.risk_assessment import RiskAssessmentService
from paysick_gateway.domain.models import ApplicationBehavior, RiskAssessmentParams, RiskAssessmentResult
from paysick_gateway.domain.exceptions import AssessmentNotFoundError, InvalidApplicationError

router = APIRouter()


def to_response(result: RiskAssessmentResult) -> RiskAssessmentResponse:
    return RiskAssessmentResponse(
        assessment_id=str(result.assessment_id),
        application_id=result.application_id,
        user_id=result.user_id,
        pd=ScoreBreakdown(score=result.pd.score, band=result.pd.band, components=asdict(result.pd.components)),
        lgd=ScoreBreakdown(score=result.lgd.score, band=result.lgd.band, components=asdict(result.lgd.components)),
        expected_loss=ExpectedLossSchema(**asdict(result.expected_loss)),
        decision=DecisionSchema(**asdict(result.decision)),
        pricing=PricingSchema(**asdict(result.pricing)),
        recommended_term=result.recommended_term,
        max_approved_amount=result.max_approved_amount,
        health_score=result.health_score,
        affordability_band=result.affordability_band,
        model_version=result.model_version,
        model_confidence=result.model_confidence,
    )


@router.post("/risk/assessments", response_model=RiskAssessmentResponse, status_code=201)
def create_assessment(
    request_body: RiskAssessmentRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
    service: RiskAssessmentService = Depends(get_risk_service),
):
    """
    Run the PD/LGD model for one application.

    Every call stores a new immutable assessment, so re-assessing an
    application adds to its history rather than overwriting it.
    """
    request_id = get_request_id(request)
    user_id = resolve_subject(caller, request_body.user_id)
    behavior = request_body.application_behavior

    try:
        result = service.calculate_risk_assessment(
            RiskAssessmentParams(
                user_id=user_id,
                application_id=request_body.application_id or str(uuid.uuid4()),
                loan_amount=request_body.loan_amount,
                procedure_type=request_body.procedure_type,
                icd10_code=request_body.icd10_code,
                provider_id=request_body.provider_id,
                monthly_income=request_body.monthly_income,
                existing_debt=request_body.existing_debt,
                medical_aid_scheme=request_body.medical_aid_scheme,
                medical_aid_option=request_body.medical_aid_option,
                has_chronic_conditions=request_body.has_chronic_conditions,
                application_behavior=ApplicationBehavior(**behavior.model_dump()) if behavior else None,
            )
        )
        db.commit()
        return to_response(result)

    except InvalidApplicationError as e:
        db.rollback()
        raise HTTPException(status_code=422, detail={"field": e.field, "reason": e.reason})

    except Exception as e:
        db.rollback()
        logging.error(f"Risk assessment failed: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/risk/assessments/{application_id}", response_model=StoredAssessmentResponse)
def get_assessment(
    application_id: str,
    caller: Caller = Depends(get_caller),
    service: RiskAssessmentService = Depends(get_risk_service),
):
    """Latest assessment of an application; other patients' assessments read as missing"""
    try:
        assessment = service.get_risk_assessment(application_id)
    except AssessmentNotFoundError:
        raise HTTPException(status_code=404, detail="Risk assessment not found")
    if not caller.can_access(assessment.user_id):
        raise HTTPException(status_code=404, detail="Risk assessment not found")

    return StoredAssessmentResponse(
        assessment_id=str(assessment.id),
        application_id=assessment.application_id,
        user_id=assessment.user_id,
        pd_score=assessment.pd_score,
        pd_band=assessment.pd_band,
        lgd_score=assessment.lgd_score,
        lgd_band=assessment.lgd_band,
        exposure_at_default=assessment.exposure_at_default,
        expected_loss=assessment.expected_loss,
        expected_loss_rate=assessment.expected_loss_rate,
        risk_decision=assessment.risk_decision,
        decision_reason=assessment.decision_reason,
        decision_confidence=assessment.decision_confidence,
        risk_adjusted_rate=assessment.risk_adjusted_rate,
        recommended_term_months=assessment.recommended_term_months,
        max_approved_amount=assessment.max_approved_amount,
        model_version=assessment.model_version,
        model_confidence=assessment.model_confidence,
        created_at=assessment.created_at.isoformat(),
    )


@router.get("/risk/health-score/{user_id}", response_model=HealthScoreResponse)
def get_health_score(
    user_id: str,
    caller: Caller = Depends(get_caller),
    service: RiskAssessmentService = Depends(get_risk_service),
):
    if not caller.can_access(user_id):
        raise HTTPException(status_code=403, detail="Not allowed to read another user's health score")

    health = service.get_health_score(user_id)
    if not health:
        raise HTTPException(status_code=404, detail="Health score not found")

    return HealthScoreResponse(
        user_id=health.user_id,
        health_payment_score=health.health_payment_score,
        score_band=health.score_band,
        medical_aid_score=health.medical_aid_score,
        medication_adherence_score=health.medication_adherence_score,
        provider_payment_score=health.provider_payment_score,
        procedure_outcome_score=health.procedure_outcome_score,
        healthcare_utilization_score=health.healthcare_utilization_score,
        active_medical_aid=health.active_medical_aid,
        medical_aid_scheme=health.medical_aid_scheme,
        score_calculated_at=health.score_calculated_at.isoformat(),
    )


@router.get("/risk/portfolio-summary", response_model=PortfolioSummaryResponse)
def get_portfolio_summary(
    _admin: str = Depends(require_admin),
    service: RiskAssessmentService = Depends(get_risk_service),
):
    """Last 30 days of assessments against PD/LGD/EL targets"""
    return PortfolioSummaryResponse(**service.get_portfolio_summary())


@router.get("/risk/distribution", response_model=RiskDistributionResponse)
def get_risk_distribution(
    _admin: str = Depends(require_admin),
    service: RiskAssessmentService = Depends(get_risk_service),
):
    return RiskDistributionResponse(distribution=service.get_risk_distribution())


@router.get("/risk/health-score-distribution", response_model=HealthScoreDistributionResponse)
def get_health_score_distribution(
    _admin: str = Depends(require_admin),
    service: RiskAssessmentService = Depends(get_risk_service),
):
    """Patient counts and average sub-scores per health score band"""
    return HealthScoreDistributionResponse(distribution=service.get_health_score_distribution())


@router.get("/risk/procedure-risk", response_model=ProcedureRiskResponse)
def get_procedure_risk(
    _admin: str = Depends(require_admin),
    service: RiskAssessmentService = Depends(get_risk_service),
):
    """Ten procedure types with the most exposure in the last 30 days"""
    return ProcedureRiskResponse(procedure_risk=service.get_procedure_risk())
