"""/v1/affordability - healthcare debt service capacity"""

import logging
from dataclasses import asdict
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from paysick_gateway.api.v1.schemas import AffordabilityRequest, AffordabilityResponse, AffordabilitySnapshotResponse
from paysick_gateway.api.dependencies import Caller, get_caller, get_request_id, get_risk_service, resolve_subject
from paysick_gateway.infrastructure.database.session import get_db
from paysick_gateway.services.risk_assessment import RiskAssessmentService
from paysick_gateway.domain.exceptions import InvalidApplicationError

router = APIRouter()


@router.post("/affordability", response_model=AffordabilityResponse)
def calculate_affordability(
    request_body: AffordabilityRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
    service: RiskAssessmentService = Depends(get_risk_service),
):
    """Assess affordability and replace the user's stored snapshot"""
    request_id = get_request_id(request)
    user_id = resolve_subject(caller, request_body.user_id)

    try:
        result = service.calculate_affordability(
            user_id=user_id,
            monthly_income=request_body.monthly_income,
            existing_debt=request_body.existing_debt,
            loan_amount=request_body.loan_amount,
            medical_aid_scheme=request_body.medical_aid_scheme,
            medical_aid_option=request_body.medical_aid_option,
        )
        db.commit()
        return AffordabilityResponse(**asdict(result))

    except InvalidApplicationError as e:
        db.rollback()
        raise HTTPException(status_code=422, detail={"field": e.field, "reason": e.reason})

    except Exception as e:
        db.rollback()
        logging.error(f"Affordability check failed: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/affordability/{user_id}", response_model=AffordabilitySnapshotResponse)
def get_affordability(
    user_id: str,
    caller: Caller = Depends(get_caller),
    service: RiskAssessmentService = Depends(get_risk_service),
):
    if not caller.can_access(user_id):
        raise HTTPException(status_code=403, detail="Not allowed to read another user's affordability")

    snapshot = service.get_affordability(user_id)
    if not snapshot:
        raise HTTPException(status_code=404, detail="Affordability assessment not found")

    return AffordabilitySnapshotResponse(
        user_id=snapshot.user_id,
        declared_income=snapshot.declared_income,
        monthly_debt_obligations=snapshot.monthly_debt_obligations,
        medical_aid_premium=snapshot.medical_aid_premium,
        healthcare_dti=snapshot.healthcare_dti,
        disposable_income=snapshot.disposable_income,
        healthcare_capacity=snapshot.healthcare_capacity,
        affordability_band=snapshot.affordability_band,
        affordability_score=snapshot.affordability_score,
        max_monthly_payment=snapshot.max_monthly_payment,
        max_loan_amount=snapshot.max_loan_amount,
        assessed_at=snapshot.assessed_at.isoformat(),
    )
