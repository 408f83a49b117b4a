"""/v1/marketplace - patient applications, lender offers and admin dashboard"""

import json
import logging
import uuid
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from paysick_gateway.api.v1.schemas import (
    AcceptOfferResponse,
    ApplicationDetailResponse,
    ApplicationListResponse,
    ApplicationRequest,
    ApplicationSubmittedResponse,
    ApplicationSummary,
    ApprovedLoanRequest,
    LenderOfferRequest,
    LenderOfferResult,
    LenderSchema,
    LenderStatsResponse,
    LendersResponse,
    LoanListResponse,
    LoanSummary,
    MarketplaceStatsResponse,
    OfferSchema,
    OffersResponse,
    PendingApplicationSchema,
    PendingApplicationsResponse,
    RepaymentSchema,
    RepaymentScheduleResponse,
    SubmissionResponse,
)
from paysick_gateway.api.dependencies import (
    get_approval_bridge,
    get_current_user_id,
    get_lender_notifier,
    get_marketplace_service,
    get_request_id,
    get_risk_service,
    require_admin,
)
from paysick_gateway.config import settings
from paysick_gateway.infrastructure.database.session import get_db
from paysick_gateway.infrastructure.database.repositories import AuditRepository, LenderRepository
from paysick_gateway.infrastructure.clients.lender import LenderNotifier
from paysick_gateway.infrastructure.observability.metrics import webhook_signature_bypass_counter
from paysick_gateway.services.approval_bridge import LoanApprovalBridge
from paysick_gateway.services.marketplace import MarketplaceAuctionService
from paysick_gateway.services.risk_assessment import RiskAssessmentService
from paysick_gateway.domain.models import (
    ApplicationBehavior,
    ApprovedLoan,
    LenderResponse,
    RiskAssessmentParams,
    RiskDecisionOutcome,
)
from paysick_gateway.domain.scoring import marketplace_risk_score
from paysick_gateway.domain.exceptions import (
    ConflictError,
    DomainException,
    InvalidApplicationError,
    NotFoundError,
    UnauthorizedOfferError,
)
from paysick_gateway.utils.date_utils import ensure_utc
from paysick_gateway.utils.signing import SIGNATURE_HEADER, verify_signature

router = APIRouter(prefix="/marketplace")

MANUAL_REVIEW = "MANUAL_REVIEW"
DECLINED = "DECLINED"


def domain_error_to_http(e: DomainException) -> HTTPException:
    """Map domain errors to HTTP; details never echo account or entity ids"""
    if isinstance(e, InvalidApplicationError):
        return HTTPException(status_code=422, detail={"field": e.field, "reason": e.reason})
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=f"{e.entity} not found")
    if isinstance(e, UnauthorizedOfferError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, ConflictError):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=500, detail="Internal server error")


def offer_view(offer, lender) -> OfferSchema:
    return OfferSchema(
        offer_id=str(offer.id),
        lender_name=lender.name,
        lender_code=lender.code,
        lender_type=lender.type,
        approved_amount=offer.approved_amount,
        interest_rate=offer.interest_rate,
        term=offer.term,
        monthly_payment=offer.monthly_payment,
        total_repayable=offer.total_repayable,
        origination_fee=offer.origination_fee,
        status=offer.status,
        expires_at=ensure_utc(offer.expires_at).isoformat(),
        lender_notes=offer.lender_notes,
        conditions=offer.conditions,
    )


def application_view(application, pending_offers: int = 0, best_rate=None) -> ApplicationSummary:
    return ApplicationSummary(
        application_id=str(application.id),
        procedure_type=application.procedure_type,
        loan_amount=application.loan_amount,
        requested_term=application.requested_term,
        risk_tier=application.risk_tier,
        status=application.status,
        submitted_at=ensure_utc(application.submitted_at).isoformat(),
        offers_deadline=ensure_utc(application.offers_deadline).isoformat(),
        pending_offers=pending_offers,
        best_rate=best_rate,
    )


def _audit_scoring_failure(db: Session, application_id: str, user_id: str, error: Exception) -> None:
    try:
        AuditRepository(db).log(
            "loan_application",
            application_id,
            "risk_assessment_failed",
            new_values={"status": MANUAL_REVIEW, "error": type(error).__name__},
            performed_by=user_id,
            performed_by_type="user",
        )
        db.commit()
    except SQLAlchemyError as audit_error:
        db.rollback()
        logging.error(f"Could not audit risk assessment failure: {audit_error}", extra={"application_id": application_id})


# -- Patient endpoints ------------------------------------------------------


@router.post("/applications", response_model=ApplicationSubmittedResponse, status_code=201)
def create_application(
    request_body: ApplicationRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    risk_service: RiskAssessmentService = Depends(get_risk_service),
    bridge: LoanApprovalBridge = Depends(get_approval_bridge),
    notifier: LenderNotifier = Depends(get_lender_notifier),
):
    """
    Score a patient application and, if approved, open a lender auction.

    Flow:
    1. Run the risk engine under a fresh application id
    2. Scoring failure -> 202 MANUAL_REVIEW (audited)
    3. Decline -> DECLINED
    4. Review, or approval above the affordable maximum -> 202 MANUAL_REVIEW
    5. Approve -> submit through the approval bridge at the assessed rate and term
    6. Notify webhook lenders after commit
    """
    request_id = get_request_id(request)
    application_id = str(uuid.uuid4())
    behavior = request_body.application_behavior

    try:
        assessment = risk_service.calculate_risk_assessment(
            RiskAssessmentParams(
                user_id=user_id,
                application_id=application_id,
                loan_amount=request_body.loan_amount,
                procedure_type=request_body.procedure_type,
                icd10_code=request_body.procedure_code,
                provider_id=request_body.provider_id,
                monthly_income=request_body.monthly_income,
                existing_debt=request_body.existing_debt,
                medical_aid_scheme=request_body.medical_aid_scheme,
                medical_aid_option=request_body.medical_aid_option,
                has_chronic_conditions=request_body.has_chronic_conditions,
                application_behavior=ApplicationBehavior(**behavior.model_dump()) if behavior else None,
            )
        )
    except InvalidApplicationError as e:
        db.rollback()
        raise domain_error_to_http(e)
    except Exception as e:
        db.rollback()
        logging.error(
            f"Risk assessment failed, routing to manual review: {e}",
            extra={"request_id": request_id, "application_id": application_id},
        )
        _audit_scoring_failure(db, application_id, user_id, e)
        response.status_code = 202
        return ApplicationSubmittedResponse(
            status=MANUAL_REVIEW,
            message="Application received and queued for manual review",
            application_id=application_id,
        )

    decision = assessment.decision.decision
    try:
        if decision == RiskDecisionOutcome.DECLINE:
            db.commit()
            # Assessed, but nothing was created in the marketplace
            response.status_code = 200
            return ApplicationSubmittedResponse(
                status=DECLINED,
                message="We are unable to offer financing for this procedure at this time",
                application_id=application_id,
                assessment_id=str(assessment.assessment_id),
            )

        if decision == RiskDecisionOutcome.REVIEW or request_body.loan_amount > assessment.max_approved_amount:
            db.commit()
            response.status_code = 202
            return ApplicationSubmittedResponse(
                status=MANUAL_REVIEW,
                message="Application received and queued for manual review",
                application_id=application_id,
                assessment_id=str(assessment.assessment_id),
            )

        result = bridge.send_to_marketplace(
            ApprovedLoan(
                user_id=user_id,
                procedure_type=request_body.procedure_type,
                loan_amount=request_body.loan_amount,
                requested_term=request_body.requested_term,
                provider_id=request_body.provider_id,
                procedure_code=request_body.procedure_code,
                procedure_description=request_body.procedure_description,
                application_id=application_id,
                existing_risk_score=marketplace_risk_score(assessment.pd.score),
                existing_monthly_income=request_body.monthly_income,
                existing_employment_status=request_body.employment_status,
                existing_employment_duration_months=request_body.employment_duration_months,
                existing_recommended_rate=assessment.pricing.final_rate,
                existing_recommended_term=assessment.recommended_term,
                ip_address=request.client.host if request.client else None,
                user_agent=request.headers.get("user-agent"),
            )
        )
        db.commit()

    except DomainException as e:
        db.rollback()
        raise domain_error_to_http(e)

    except Exception as e:
        db.rollback()
        logging.error(f"Marketplace submission failed: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")

    background_tasks.add_task(notifier.dispatch_all, result.notifications)

    return ApplicationSubmittedResponse(
        status="SUBMITTED",
        message="Application submitted to marketplace",
        application_id=str(result.application_id),
        assessment_id=str(assessment.assessment_id),
        eligible_lenders=result.eligible_lenders,
    )


@router.get("/applications", response_model=ApplicationListResponse)
def list_applications(
    user_id: str = Depends(get_current_user_id),
    service: MarketplaceAuctionService = Depends(get_marketplace_service),
):
    rows = service.list_user_applications(user_id)
    return ApplicationListResponse(
        applications=[
            application_view(application, pending or 0, round(best_rate, 4) if best_rate is not None else None)
            for application, pending, best_rate in rows
        ]
    )


@router.get("/applications/{application_id}", response_model=ApplicationDetailResponse)
def get_application(
    application_id: str,
    user_id: str = Depends(get_current_user_id),
    service: MarketplaceAuctionService = Depends(get_marketplace_service),
):
    """Application with its offers; only visible to its owner"""
    try:
        application = service.get_user_application(application_id, user_id)
        offers = service.get_application_offers(application.id)
    except NotFoundError as e:
        raise domain_error_to_http(e)

    pending = [offer for offer, _ in offers if offer.status == "PENDING"]
    return ApplicationDetailResponse(
        application=application_view(
            application,
            len(pending),
            min((offer.interest_rate for offer in pending), default=None),
        ),
        offers=[offer_view(offer, lender) for offer, lender in offers],
    )


@router.get("/applications/{application_id}/offers", response_model=OffersResponse)
def get_application_offers(
    application_id: str,
    user_id: str = Depends(get_current_user_id),
    service: MarketplaceAuctionService = Depends(get_marketplace_service),
):
    """Offers ordered by ascending interest rate"""
    try:
        application = service.get_user_application(application_id, user_id)
        offers = service.get_application_offers(application.id)
    except NotFoundError as e:
        raise domain_error_to_http(e)

    return OffersResponse(
        application_id=str(application.id),
        offers=[offer_view(offer, lender) for offer, lender in offers],
    )


@router.post("/offers/{offer_id}/accept", response_model=AcceptOfferResponse)
def accept_offer(
    offer_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: MarketplaceAuctionService = Depends(get_marketplace_service),
):
    """
    Accept an offer. Originates the loan and its repayment schedule and
    declines every other pending offer, all in one transaction.
    """
    request_id = get_request_id(request)

    try:
        accepted = service.accept_offer(offer_id, user_id)
        db.commit()

    except DomainException as e:
        db.rollback()
        logging.warning(f"Offer acceptance refused: {e}", extra={"request_id": request_id})
        raise domain_error_to_http(e)

    except SQLAlchemyError as e:
        # Unique constraint on marketplace_loan.application_id: a concurrent accept won
        db.rollback()
        logging.warning(f"Offer acceptance lost a race: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=409, detail="Offer not found or no longer available")

    except Exception as e:
        db.rollback()
        logging.error(f"Offer acceptance failed: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")

    return AcceptOfferResponse(
        loan_id=str(accepted.loan_id),
        offer_id=str(accepted.offer_id),
        application_id=str(accepted.application_id),
    )


@router.get("/loans", response_model=LoanListResponse)
def list_loans(
    user_id: str = Depends(get_current_user_id),
    service: MarketplaceAuctionService = Depends(get_marketplace_service),
):
    return LoanListResponse(
        loans=[
            LoanSummary(
                loan_id=str(loan.id),
                application_id=str(loan.application_id),
                lender_name=loan.lender.name,
                principal_amount=loan.principal_amount,
                interest_rate=loan.interest_rate,
                term=loan.term,
                monthly_payment=loan.monthly_payment,
                total_repayable=loan.total_repayable,
                origination_fee=loan.origination_fee,
                status=loan.status,
                first_payment_date=loan.first_payment_date,
                maturity_date=loan.maturity_date,
                completed_payments=completed or 0,
            )
            for loan, completed in service.list_user_loans(user_id)
        ]
    )


@router.get("/loans/{loan_id}/repayments", response_model=RepaymentScheduleResponse)
def get_loan_repayments(
    loan_id: str,
    user_id: str = Depends(get_current_user_id),
    service: MarketplaceAuctionService = Depends(get_marketplace_service),
):
    try:
        loan, repayments = service.get_loan_repayments(loan_id, user_id)
    except NotFoundError as e:
        raise domain_error_to_http(e)

    return RepaymentScheduleResponse(
        loan_id=str(loan.id),
        repayments=[
            RepaymentSchema(
                payment_number=r.payment_number,
                scheduled_date=r.scheduled_date,
                scheduled_amount=r.scheduled_amount,
                principal_portion=r.principal_portion,
                interest_portion=r.interest_portion,
                status=r.status,
            )
            for r in repayments
        ],
    )


# -- Lender webhook ---------------------------------------------------------


@router.post("/webhooks/offer-response", response_model=LenderOfferResult)
async def lender_offer_webhook(
    request: Request,
    db: Session = Depends(get_db),
    service: MarketplaceAuctionService = Depends(get_marketplace_service),
):
    """
    Lender answer to a `loan.available` package.

    Signed with X-PaySick-Signature, the hex HMAC-SHA256 of the raw body keyed
    by the lender's API key. Outside production an unverifiable signature is
    let through with a warning and counted.
    """
    request_id = get_request_id(request)
    body = await request.body()

    try:
        payload = LenderOfferRequest.model_validate_json(body)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=json.loads(e.json(include_url=False)))

    lender = LenderRepository(db).get_by_code(payload.lender_code, active_only=True)
    signature = request.headers.get(SIGNATURE_HEADER)
    if not verify_signature(body, signature, lender.api_key if lender else None):
        if settings.is_production:
            raise HTTPException(status_code=401, detail="Invalid signature")
        webhook_signature_bypass_counter.inc()
        logging.warning(
            "Accepting lender webhook with invalid signature outside production",
            extra={"request_id": request_id, "lender_code": payload.lender_code},
        )

    return _record_lender_response(payload, db, service, request_id)


def _record_lender_response(
    payload: LenderOfferRequest,
    db: Session,
    service: MarketplaceAuctionService,
    request_id: str,
) -> LenderOfferResult:
    try:
        outcome = service.receive_lender_offer(LenderResponse(**payload.model_dump()))
        db.commit()

    except DomainException as e:
        db.rollback()
        raise domain_error_to_http(e)

    except Exception as e:
        db.rollback()
        logging.error(f"Lender response failed: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")

    offer_id = outcome.get("offer_id")
    return LenderOfferResult(
        success=outcome["success"],
        declined=outcome["declined"],
        offer_id=str(offer_id) if offer_id else None,
    )


# -- Admin / lender dashboard -----------------------------------------------


@router.post("/admin/manual-offers", response_model=LenderOfferResult, status_code=201)
def create_manual_offer(
    request_body: LenderOfferRequest,
    request: Request,
    _admin: str = Depends(require_admin),
    db: Session = Depends(get_db),
    service: MarketplaceAuctionService = Depends(get_marketplace_service),
):
    """Offer captured by staff for lenders without a webhook integration"""
    return _record_lender_response(request_body, db, service, get_request_id(request))


@router.post("/admin/approved-loans", response_model=SubmissionResponse, status_code=201)
def submit_approved_loan(
    request_body: ApprovedLoanRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    _admin: str = Depends(require_admin),
    db: Session = Depends(get_db),
    bridge: LoanApprovalBridge = Depends(get_approval_bridge),
    notifier: LenderNotifier = Depends(get_lender_notifier),
):
    """Hand a loan approved by an upstream system to the marketplace"""
    request_id = get_request_id(request)

    try:
        result = bridge.send_to_marketplace(
            ApprovedLoan(
                **request_body.model_dump(),
                ip_address=request.client.host if request.client else None,
                user_agent=request.headers.get("user-agent"),
            )
        )
        db.commit()

    except DomainException as e:
        db.rollback()
        raise domain_error_to_http(e)

    except Exception as e:
        db.rollback()
        logging.error(f"Approved loan submission failed: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")

    background_tasks.add_task(notifier.dispatch_all, result.notifications)

    return SubmissionResponse(
        application_id=str(result.application_id),
        eligible_lenders=result.eligible_lenders,
        notified_lenders=len(result.notifications),
    )


@router.get("/admin/pending-applications", response_model=PendingApplicationsResponse)
def list_pending_applications(
    _admin: str = Depends(require_admin),
    service: MarketplaceAuctionService = Depends(get_marketplace_service),
):
    return PendingApplicationsResponse(
        applications=[
            PendingApplicationSchema(
                application_id=str(application.id),
                procedure_type=application.procedure_type,
                loan_amount=application.loan_amount,
                requested_term=application.requested_term,
                risk_score=application.risk_score,
                risk_tier=application.risk_tier,
                affordability_score=application.affordability_score,
                status=application.status,
                submitted_at=ensure_utc(application.submitted_at).isoformat(),
                offers_deadline=ensure_utc(application.offers_deadline).isoformat(),
                offer_count=offer_count or 0,
            )
            for application, offer_count in service.list_pending_applications()
        ]
    )


@router.get("/admin/lenders", response_model=LendersResponse)
def list_lenders(
    _admin: str = Depends(require_admin),
    service: MarketplaceAuctionService = Depends(get_marketplace_service),
):
    return LendersResponse(
        lenders=[
            LenderSchema(
                lender_code=lender.code,
                name=lender.name,
                type=lender.type,
                active=lender.active,
                min_loan_amount=lender.min_loan_amount,
                max_loan_amount=lender.max_loan_amount,
                min_risk_score=lender.min_risk_score,
                max_risk_score=lender.max_risk_score,
                base_rate=lender.base_rate,
                has_webhook=bool(lender.webhook_url),
            )
            for lender in service.list_lenders()
        ]
    )


@router.get("/admin/lender-stats", response_model=LenderStatsResponse)
def get_lender_stats(
    _admin: str = Depends(require_admin),
    service: MarketplaceAuctionService = Depends(get_marketplace_service),
):
    return LenderStatsResponse(lenders=service.get_lender_stats())


@router.get("/admin/stats", response_model=MarketplaceStatsResponse)
def get_marketplace_stats(
    _admin: str = Depends(require_admin),
    service: MarketplaceAuctionService = Depends(get_marketplace_service),
):
    return MarketplaceStatsResponse(**service.get_marketplace_stats())
