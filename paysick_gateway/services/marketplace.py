"""Marketplace Auction Engine - lenders bid on pre-approved healthcare loans"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type

from sqlalchemy.orm import Session

from paysick_gateway.domain.exceptions import (
    ApplicationClosedError,
    ApplicationNotFoundError,
    DuplicateApplicationError,
    InvalidApplicationError,
    LenderNotFoundError,
    LoanNotFoundError,
    NotFoundError,
    OfferNotFoundError,
    OfferUnavailableError,
    UnauthorizedOfferError,
)
from paysick_gateway.domain.installments import generate_repayment_schedule
from paysick_gateway.domain.marketplace import (
    MAX_LOAN_AMOUNT,
    MAX_TERM_MONTHS,
    MIN_LOAN_AMOUNT,
    MIN_TERM_MONTHS,
    build_offer_terms,
    calculate_lender_rate,
    get_risk_tier,
    is_auto_accepting,
    resolve_offer_rate,
    resolve_offer_term,
)
from paysick_gateway.domain.models import (
    AcceptedOffer,
    ApplicationStatus,
    LenderNotification,
    LenderResponse,
    OfferStatus,
    SubmissionParams,
    SubmissionResult,
)
from paysick_gateway.domain.risk_config import MarketplaceConfig
from paysick_gateway.infrastructure.database.models import (
    Lender,
    LenderOffer,
    LoanApplication,
    LoanRepayment,
    MarketplaceLoan,
)
from paysick_gateway.infrastructure.database.repositories import (
    ApplicationRepository,
    AuditRepository,
    LenderRepository,
    LoanRepository,
    OfferRepository,
    RepaymentRepository,
)
from paysick_gateway.infrastructure.observability.logging import log_offer_accepted, log_submission
from paysick_gateway.infrastructure.observability.metrics import (
    applications_submitted_counter,
    offers_accepted_counter,
    record_offer_created,
)
from paysick_gateway.services.events import (
    APPLICATION_SUBMITTED,
    OFFER_ACCEPTED,
    OFFER_CREATED,
    EventListener,
    emit,
)
from paysick_gateway.utils.date_utils import utcnow

logger = logging.getLogger(__name__)

ANOTHER_OFFER_ACCEPTED = "Another offer accepted"


def _as_uuid(value: object, not_found: Type[NotFoundError]) -> uuid.UUID:
    """Parse an id; malformed ids cannot match anything and read as not found"""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise not_found(value)


class MarketplaceAuctionService:
    """
    Runs the lender auction for one pre-approved loan at a time.

    Lifecycle of an application:

        SUBMITTED -> UNDERWRITING -> OFFERS_RECEIVED -> OFFER_SELECTED

    The caller owns the transaction: every method only flushes, and the
    caller commits on success or rolls back on any exception.
    """

    def __init__(
        self,
        db: Session,
        config: Optional[MarketplaceConfig] = None,
        listeners: Iterable[EventListener] = (),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.config = config or MarketplaceConfig()
        self.listeners = list(listeners)
        self.clock = clock

        self.applications = ApplicationRepository(db)
        self.lenders = LenderRepository(db)
        self.offers = OfferRepository(db)
        self.loans = LoanRepository(db)
        self.repayments = RepaymentRepository(db)
        self.audit = AuditRepository(db)

    # -- Auction ------------------------------------------------------------

    def submit_to_marketplace(self, params: SubmissionParams) -> SubmissionResult:
        """
        Open an auction for a pre-approved loan.

        Flow:
        1. Validate amount, term and procedure (nothing is written on failure)
        2. Create the application in SUBMITTED with a 2h offers deadline
        3. Match active lenders whose amount and risk ranges cover the loan
        4. Balance-sheet lenders bid immediately at their tier rate
        5. Webhook lenders get a `loan.available` package queued
        6. SUBMITTED -> UNDERWRITING unless offers already arrived

        Queued notifications are returned, not sent: they must go out only
        after the caller commits.

        Raises:
            InvalidApplicationError: Field missing or out of range
            DuplicateApplicationError: Application id already used
        """
        self._validate_submission(params)

        now = self.clock()
        risk_score = params.risk_score if params.risk_score is not None else self.config.default_risk_score
        risk_tier = get_risk_tier(params.risk_score)

        application = self.applications.create(
            params,
            risk_tier=risk_tier,
            submitted_at=now,
            offers_deadline=now + timedelta(hours=self.config.offers_window_hours),
        )
        self.audit.log(
            "loan_application",
            application.id,
            "create",
            new_values={
                "status": ApplicationStatus.SUBMITTED,
                "loan_amount": params.loan_amount,
                "risk_tier": risk_tier,
            },
            performed_by=params.user_id,
            performed_by_type="user",
        )

        eligible = self.lenders.get_eligible(params.loan_amount, risk_score)
        if not eligible:
            logger.warning(
                "No lender covers this loan; application stays open without offers",
                extra={"application_id": str(application.id), "risk_score": risk_score},
            )
        term = params.recommended_term or params.requested_term

        notifications = []
        for lender in eligible:
            if is_auto_accepting(lender):
                rate = calculate_lender_rate(lender, risk_score, self.config)
                self._create_offer(application, lender, params.loan_amount, rate, term, now)
                continue

            if lender.webhook_url:
                notifications.append(
                    LenderNotification(
                        lender_code=lender.code,
                        lender_name=lender.name,
                        webhook_url=lender.webhook_url,
                        api_key=lender.api_key,
                        payload=self._loan_package(application, risk_score),
                    )
                )
            self.audit.log(
                "loan_application",
                application.id,
                "lender_notified",
                new_values={"lender_id": lender.id, "lender_name": lender.name, "lender_type": lender.type},
            )

        self.applications.mark_underwriting(application.id, now)

        applications_submitted_counter.inc()
        log_submission(str(application.id), params.user_id, risk_tier, len(eligible))
        emit(
            self.listeners,
            APPLICATION_SUBMITTED,
            {"application_id": str(application.id), "risk_tier": risk_tier, "eligible_lenders": len(eligible)},
        )

        return SubmissionResult(
            application_id=application.id,
            eligible_lenders=len(eligible),
            notifications=notifications,
        )

    def receive_lender_offer(self, response: LenderResponse) -> Dict[str, Any]:
        """
        Record a lender's answer (webhook callback or manual entry).

        A decline is only audited. An acceptance creates, or refreshes in
        place, the lender's single PENDING offer on the application.

        Raises:
            LenderNotFoundError: Unknown or inactive lender code
            ApplicationNotFoundError: Unknown application
            ApplicationClosedError: Application already selected an offer
            OfferUnavailableError: Lender's offer already left PENDING
        """
        lender = self.lenders.get_by_code(response.lender_code, active_only=True)
        if lender is None:
            raise LenderNotFoundError(response.lender_code)

        application = self.applications.get(_as_uuid(response.application_id, ApplicationNotFoundError))
        if application is None:
            raise ApplicationNotFoundError(response.application_id)

        if not response.accepted:
            logger.info(
                "Lender declined application",
                extra={"application_id": str(application.id), "lender_code": lender.code},
            )
            self.audit.log(
                "loan_application",
                application.id,
                "lender_declined",
                new_values={"lender_id": lender.id, "reason": response.reason},
                performed_by=lender.code,
                performed_by_type="lender",
            )
            return {"success": True, "declined": True}

        if application.status == ApplicationStatus.OFFER_SELECTED or application.selected_offer_id is not None:
            raise ApplicationClosedError("Application already selected an offer")

        rate = resolve_offer_rate(
            response.adjusted_rate,
            application.recommended_rate,
            lender,
            application.risk_score,
            self.config,
        )
        term = resolve_offer_term(response.adjusted_term, application.recommended_term, application.requested_term)

        offer_id = self._create_offer(
            application,
            lender,
            application.loan_amount,
            rate,
            term,
            self.clock(),
            lender_notes=response.lender_notes,
            conditions=response.conditions,
        )
        return {"success": True, "declined": False, "offer_id": offer_id}

    def accept_offer(self, offer_id: object, user_id: str) -> AcceptedOffer:
        """
        Accept one offer and originate the loan.

        Runs inside the caller's transaction with the application row locked.
        Both state changes are compare-and-set, so of two concurrent accepts on
        one application exactly one wins; the loser raises and its transaction
        rolls back. The unique application_id on marketplace_loan backs this up.

        Raises:
            OfferNotFoundError: No such offer
            UnauthorizedOfferError: Offer belongs to another user's application
            OfferUnavailableError: Offer not PENDING or another offer already won
        """
        offer = self.offers.get(_as_uuid(offer_id, OfferNotFoundError))
        if offer is None:
            raise OfferNotFoundError(offer_id)

        application = self.applications.get_for_update(offer.application_id)
        if application is None:
            raise ApplicationNotFoundError(offer.application_id)
        if application.user_id != user_id:
            raise UnauthorizedOfferError()

        now = self.clock()
        if self.offers.accept(offer.id, now) != 1:
            raise OfferUnavailableError()
        if self.applications.select_offer(application.id, offer.id, now) != 1:
            raise OfferUnavailableError("Application already has an accepted offer")

        declined = self.offers.decline_others(application.id, offer.id, ANOTHER_OFFER_ACCEPTED, now)

        schedule = generate_repayment_schedule(
            principal=offer.approved_amount,
            annual_rate=offer.interest_rate,
            term=offer.term,
            monthly_payment=offer.monthly_payment,
            start_date=now.date(),
        )
        loan = self.loans.create_from_offer(
            offer,
            application,
            first_payment_date=schedule[0].scheduled_date,
            maturity_date=schedule[-1].scheduled_date,
        )
        self.repayments.create_schedule(loan.id, application.user_id, schedule)

        self.audit.log(
            "lender_offer",
            offer.id,
            "accepted",
            old_values={"status": OfferStatus.PENDING},
            new_values={"status": OfferStatus.ACCEPTED},
            performed_by=user_id,
            performed_by_type="user",
        )
        if declined:
            self.audit.log(
                "loan_application",
                application.id,
                "offers_declined",
                new_values={"offer_ids": declined, "reason": ANOTHER_OFFER_ACCEPTED},
            )
        self.audit.log(
            "marketplace_loan",
            loan.id,
            "create",
            new_values={
                "application_id": application.id,
                "offer_id": offer.id,
                "lender_id": offer.lender_id,
                "principal_amount": offer.approved_amount,
                "interest_rate": offer.interest_rate,
                "term": offer.term,
            },
            performed_by=user_id,
            performed_by_type="user",
        )

        offers_accepted_counter.inc()
        log_offer_accepted(str(application.id), str(offer.id), str(loan.id), user_id)
        emit(
            self.listeners,
            OFFER_ACCEPTED,
            {"application_id": str(application.id), "offer_id": str(offer.id), "loan_id": str(loan.id)},
        )

        return AcceptedOffer(loan_id=loan.id, offer_id=offer.id, application_id=application.id)

    def get_application_offers(self, application_id: object) -> List[Tuple[LenderOffer, Lender]]:
        """All offers on an application with their lender, lowest rate first"""
        return self.offers.list_for_application(_as_uuid(application_id, ApplicationNotFoundError))

    # -- Patient views ------------------------------------------------------

    def list_user_applications(self, user_id: str) -> List[Tuple[LoanApplication, int, Optional[float]]]:
        return self.applications.list_for_user(user_id)

    def get_user_application(self, application_id: object, user_id: str) -> LoanApplication:
        application = self.applications.get_for_user(_as_uuid(application_id, ApplicationNotFoundError), user_id)
        if application is None:
            raise ApplicationNotFoundError(application_id)
        return application

    def list_user_loans(self, user_id: str) -> List[Tuple[MarketplaceLoan, int]]:
        return self.loans.list_for_user(user_id)

    def get_loan_repayments(self, loan_id: object, user_id: str) -> Tuple[MarketplaceLoan, List[LoanRepayment]]:
        loan = self.loans.get_for_user(_as_uuid(loan_id, LoanNotFoundError), user_id)
        if loan is None:
            raise LoanNotFoundError(loan_id)
        return loan, self.repayments.list_for_loan(loan.id)

    # -- Lender / admin views -----------------------------------------------

    def list_pending_applications(self) -> List[Tuple[LoanApplication, int]]:
        return self.applications.list_open()

    def list_lenders(self) -> List[Lender]:
        return self.lenders.list_all()

    def get_lender_stats(self) -> List[Dict[str, Any]]:
        return self.lenders.performance()

    def get_marketplace_stats(self) -> Dict[str, Any]:
        return self.applications.stats()

    # -- Internals ----------------------------------------------------------

    def _validate_submission(self, params: SubmissionParams) -> None:
        if not params.user_id:
            raise InvalidApplicationError("user_id", "is required")
        if not params.procedure_type:
            raise InvalidApplicationError("procedure_type", "is required")
        if params.loan_amount is None or not MIN_LOAN_AMOUNT <= params.loan_amount <= MAX_LOAN_AMOUNT:
            raise InvalidApplicationError(
                "loan_amount", f"must be between {MIN_LOAN_AMOUNT} and {MAX_LOAN_AMOUNT}"
            )
        if params.requested_term is None or not MIN_TERM_MONTHS <= params.requested_term <= MAX_TERM_MONTHS:
            raise InvalidApplicationError(
                "requested_term", f"must be between {MIN_TERM_MONTHS} and {MAX_TERM_MONTHS} months"
            )
        if params.application_id is not None:
            try:
                application_id = uuid.UUID(str(params.application_id))
            except ValueError:
                raise InvalidApplicationError("application_id", "must be a UUID")
            if self.applications.get(application_id) is not None:
                raise DuplicateApplicationError()

    def _create_offer(
        self,
        application: LoanApplication,
        lender: Lender,
        amount: float,
        rate: float,
        term: int,
        now: datetime,
        lender_notes: Optional[str] = None,
        conditions: Optional[str] = None,
    ) -> uuid.UUID:
        terms = build_offer_terms(amount, rate, term, self.config)
        offer_id = self.offers.upsert_offer(
            application.id,
            lender.id,
            terms,
            expires_at=now + timedelta(hours=self.config.offer_expiry_hours),
            now=now,
            lender_notes=lender_notes,
            conditions=conditions,
        )
        if offer_id is None:
            raise OfferUnavailableError("Lender offer is no longer pending")

        self.applications.mark_offers_received(application.id)
        self.audit.log(
            "lender_offer",
            offer_id,
            "create",
            new_values={
                "application_id": application.id,
                "lender_id": lender.id,
                "amount": terms.amount,
                "rate": terms.rate,
                "term": terms.term,
                "monthly_payment": terms.monthly_payment,
            },
            performed_by=lender.code,
            performed_by_type="lender",
        )

        record_offer_created(lender.type)
        emit(
            self.listeners,
            OFFER_CREATED,
            {"application_id": str(application.id), "offer_id": str(offer_id), "lender_code": lender.code},
        )
        return offer_id

    def _loan_package(self, application: LoanApplication, risk_score: float) -> Dict[str, Any]:
        """`loan.available` webhook body; the applicant is anonymised"""
        return {
            "event": "loan.available",
            "application_id": str(application.id),
            "loan": {
                "amount": application.loan_amount,
                "proposed_rate": application.recommended_rate,
                "proposed_term": application.recommended_term,
                "proposed_monthly_payment": application.recommended_monthly_payment,
            },
            "risk": {
                "paysick_score": risk_score,
                "paysick_tier": application.risk_tier,
                "affordability_ratio": application.affordability_score,
            },
            "applicant": {
                "monthly_income": application.monthly_income,
                "employment_status": application.employment_status,
            },
            "action_required": "RESPOND_WITH_OFFER",
            "respond_by": application.offers_deadline.isoformat(),
            "callback_url": self.config.callback_url,
        }
