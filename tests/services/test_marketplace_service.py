"""Tests for the marketplace auction: submission, lender offers and acceptance"""

import uuid
from datetime import date, datetime, timezone

import pytest
from paysick_gateway.domain.installments import calculate_monthly_payment
from paysick_gateway.domain.exceptions import (
    ApplicationClosedError,
    ApplicationNotFoundError,
    DuplicateApplicationError,
    InvalidApplicationError,
    LenderNotFoundError,
    OfferNotFoundError,
    OfferUnavailableError,
    UnauthorizedOfferError,
)
from paysick_gateway.domain.models import (
    ApplicationStatus,
    LenderResponse,
    OfferStatus,
    RiskTier,
    SubmissionParams,
)
from paysick_gateway.infrastructure.database.models import (
    LenderOffer,
    LoanApplication,
    MarketplaceAuditLog,
    MarketplaceLoan,
)
from paysick_gateway.services.events import APPLICATION_SUBMITTED, OFFER_ACCEPTED, OFFER_CREATED
from paysick_gateway.services.marketplace import MarketplaceAuctionService

NOW = datetime(2026, 1, 31, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def events():
    return []


@pytest.fixture
def service(db, lenders, events):
    return MarketplaceAuctionService(db, listeners=[events.append], clock=lambda: NOW)


def _params(**overrides):
    params = {
        "user_id": "patient-1",
        "procedure_type": "Knee replacement",
        "loan_amount": 20000,
        "requested_term": 6,
        "provider_id": "prov-netcare-01",
        "risk_score": 75,
    }
    params.update(overrides)
    return SubmissionParams(**params)


def _submit(db, service, **overrides):
    result = service.submit_to_marketplace(_params(**overrides))
    db.commit()
    return result


def _bank_offer(db, service, application_id, rate=0.17):
    result = service.receive_lender_offer(
        LenderResponse(application_id=str(application_id), lender_code="BANKX", accepted=True, adjusted_rate=rate)
    )
    db.commit()
    return result["offer_id"]


def test_submission_runs_auction(db, service, lenders, events):
    """Test balance-sheet lender bids immediately and webhook lender is queued"""
    result = _submit(db, service)

    application = db.get(LoanApplication, result.application_id)
    assert result.eligible_lenders == 2
    assert application.status == ApplicationStatus.OFFERS_RECEIVED
    assert application.risk_tier == RiskTier.LOW
    assert application.recommended_term == 6

    offers = service.get_application_offers(result.application_id)
    assert len(offers) == 1
    offer, lender = offers[0]
    assert lender.code == "PAYSICK"
    assert offer.interest_rate == pytest.approx(0.20)  # 18% + 2% LOW premium
    assert offer.term == 6
    assert offer.status == OfferStatus.PENDING
    assert offer.origination_fee == 500
    expected_payment = round(calculate_monthly_payment(20000, 0.20, 6), 2)
    assert offer.monthly_payment == pytest.approx(expected_payment)
    assert offer.total_repayable == pytest.approx(round(expected_payment * 6, 2))

    assert [n.lender_code for n in result.notifications] == ["BANKX"]
    package = result.notifications[0].payload
    assert package["event"] == "loan.available"
    assert package["application_id"] == str(result.application_id)
    assert package["risk"]["paysick_tier"] == RiskTier.LOW
    assert package["action_required"] == "RESPOND_WITH_OFFER"
    assert package["callback_url"].endswith("/v1/marketplace/webhooks/offer-response")

    assert [e.name for e in events] == [OFFER_CREATED, APPLICATION_SUBMITTED]


def test_submission_without_instant_lender_moves_to_underwriting(db, service, lenders):
    lenders.paysick.active = False
    db.commit()

    result = _submit(db, service)

    assert db.get(LoanApplication, result.application_id).status == ApplicationStatus.UNDERWRITING
    assert service.get_application_offers(result.application_id) == []


def test_missing_risk_score_prices_as_medium(db, service):
    result = _submit(db, service, risk_score=None)

    offer, _ = service.get_application_offers(result.application_id)[0]
    assert db.get(LoanApplication, result.application_id).risk_tier == RiskTier.MEDIUM
    assert offer.interest_rate == pytest.approx(0.23)
    # default score 50 is below the bank's minimum of 60
    assert result.notifications == []


@pytest.mark.parametrize(
    "overrides,field",
    [
        ({"loan_amount": 999}, "loan_amount"),
        ({"loan_amount": 500001}, "loan_amount"),
        ({"requested_term": 2}, "requested_term"),
        ({"requested_term": 61}, "requested_term"),
        ({"procedure_type": ""}, "procedure_type"),
        ({"user_id": ""}, "user_id"),
        ({"application_id": "not-a-uuid"}, "application_id"),
    ],
)
def test_invalid_submission_writes_nothing(db, service, overrides, field):
    with pytest.raises(InvalidApplicationError) as exc_info:
        service.submit_to_marketplace(_params(**overrides))

    assert exc_info.value.field == field
    assert db.query(LoanApplication).count() == 0
    assert db.query(MarketplaceAuditLog).count() == 0


def test_resubmitting_an_application_id_conflicts(db, service):
    application_id = str(uuid.uuid4())
    first = _submit(db, service, application_id=application_id)
    assert str(first.application_id) == application_id

    with pytest.raises(DuplicateApplicationError):
        service.submit_to_marketplace(_params(application_id=application_id, loan_amount=30000))
    db.rollback()

    assert db.query(LoanApplication).count() == 1
    assert db.get(LoanApplication, first.application_id).loan_amount == 20000


def test_lender_offer_is_idempotent(db, service):
    """Test a replayed lender response refreshes the same offer"""
    application_id = _submit(db, service).application_id

    first = _bank_offer(db, service, application_id, rate=0.17)
    second = _bank_offer(db, service, application_id, rate=0.165)

    assert first == second
    offers = service.get_application_offers(application_id)
    assert len(offers) == 2
    assert offers[0][1].code == "BANKX"  # cheapest first
    assert offers[0][0].interest_rate == pytest.approx(0.165)


def test_lender_offer_falls_back_to_recommended_rate(db, service):
    application_id = _submit(db, service, recommended_rate=0.21, recommended_term=9).application_id

    offer_id = service.receive_lender_offer(
        LenderResponse(application_id=str(application_id), lender_code="BANKX", accepted=True)
    )["offer_id"]

    offer = db.get(LenderOffer, offer_id)
    assert offer.interest_rate == pytest.approx(0.21)
    assert offer.term == 9


def test_lender_decline_is_only_audited(db, service):
    application_id = _submit(db, service).application_id

    result = service.receive_lender_offer(
        LenderResponse(application_id=str(application_id), lender_code="BANKX", accepted=False, reason="Outside appetite")
    )

    assert result == {"success": True, "declined": True}
    assert len(service.get_application_offers(application_id)) == 1
    actions = [e.action for e in service.audit.list_for_entity("loan_application", application_id)]
    assert "lender_declined" in actions


def test_lender_offer_rejects_unknown_lender_and_application(db, service, lenders):
    application_id = _submit(db, service).application_id

    with pytest.raises(LenderNotFoundError):
        service.receive_lender_offer(LenderResponse(application_id=str(application_id), lender_code="NOPE", accepted=True))

    with pytest.raises(ApplicationNotFoundError):
        service.receive_lender_offer(LenderResponse(application_id=str(uuid.uuid4()), lender_code="BANKX", accepted=True))

    with pytest.raises(ApplicationNotFoundError):
        service.receive_lender_offer(LenderResponse(application_id="not-a-uuid", lender_code="BANKX", accepted=True))

    lenders.bank.active = False
    db.commit()
    with pytest.raises(LenderNotFoundError):
        service.receive_lender_offer(LenderResponse(application_id=str(application_id), lender_code="BANKX", accepted=True))


def test_accept_offer_originates_loan(db, service, events):
    """Test full auction: accept the cheapest offer and decline the rest"""
    application_id = _submit(db, service).application_id
    bank_offer_id = _bank_offer(db, service, application_id)

    accepted = service.accept_offer(bank_offer_id, "patient-1")
    db.commit()

    application = db.get(LoanApplication, application_id)
    assert application.status == ApplicationStatus.OFFER_SELECTED
    assert application.selected_offer_id == bank_offer_id

    statuses = {lender.code: (offer.status, offer.decline_reason) for offer, lender in service.get_application_offers(application_id)}
    assert statuses["BANKX"] == (OfferStatus.ACCEPTED, None)
    assert statuses["PAYSICK"] == (OfferStatus.DECLINED, "Another offer accepted")

    loan, repayments = service.get_loan_repayments(accepted.loan_id, "patient-1")
    assert loan.offer_id == bank_offer_id
    assert loan.principal_amount == 20000
    assert loan.interest_rate == pytest.approx(0.17)
    assert loan.total_outstanding == 20500
    assert loan.first_payment_date == date(2026, 2, 28)
    assert loan.maturity_date == date(2026, 7, 31)
    assert len(repayments) == 6
    assert sum(r.principal_portion for r in repayments) == pytest.approx(20000, abs=0.1)

    assert [l.id for l, completed in service.list_user_loans("patient-1")] == [accepted.loan_id]
    assert events[-1].name == OFFER_ACCEPTED


def test_second_accept_conflicts(db, service):
    """Test exactly one accepted offer and one loan per application"""
    application_id = _submit(db, service).application_id
    bank_offer_id = _bank_offer(db, service, application_id)
    paysick_offer = next(o for o, l in service.get_application_offers(application_id) if l.code == "PAYSICK")

    service.accept_offer(bank_offer_id, "patient-1")
    db.commit()

    with pytest.raises(OfferUnavailableError):
        service.accept_offer(paysick_offer.id, "patient-1")
    db.rollback()

    with pytest.raises(OfferUnavailableError):
        service.accept_offer(bank_offer_id, "patient-1")
    db.rollback()

    assert db.query(MarketplaceLoan).filter(MarketplaceLoan.application_id == application_id).count() == 1
    assert service.loans.count_for_application(application_id) == 1


def test_accept_loses_when_another_offer_already_selected(db, service):
    """Test compare-and-set on the application rolls the loser back"""
    application_id = _submit(db, service).application_id
    offer, _ = service.get_application_offers(application_id)[0]

    # A concurrent accept committed first
    db.query(LoanApplication).filter(LoanApplication.id == application_id).update({"selected_offer_id": uuid.uuid4()})
    db.commit()

    with pytest.raises(OfferUnavailableError):
        service.accept_offer(offer.id, "patient-1")
    db.rollback()

    assert db.get(LenderOffer, offer.id).status == OfferStatus.PENDING
    assert db.query(MarketplaceLoan).count() == 0


def test_offer_after_selection_is_rejected(db, service):
    application_id = _submit(db, service).application_id
    offer, _ = service.get_application_offers(application_id)[0]
    service.accept_offer(offer.id, "patient-1")
    db.commit()

    with pytest.raises(ApplicationClosedError):
        service.receive_lender_offer(
            LenderResponse(application_id=str(application_id), lender_code="BANKX", accepted=True, adjusted_rate=0.15)
        )


def test_accept_requires_owner_and_known_offer(db, service):
    application_id = _submit(db, service).application_id
    offer, _ = service.get_application_offers(application_id)[0]

    with pytest.raises(UnauthorizedOfferError):
        service.accept_offer(offer.id, "someone-else")
    with pytest.raises(OfferNotFoundError):
        service.accept_offer(uuid.uuid4(), "patient-1")
    with pytest.raises(OfferNotFoundError):
        service.accept_offer("not-a-uuid", "patient-1")

    assert db.get(LenderOffer, offer.id).status == OfferStatus.PENDING


def test_failing_listener_does_not_break_submission(db, lenders):
    def broken(event):
        raise RuntimeError("listener down")

    service = MarketplaceAuctionService(db, listeners=[broken], clock=lambda: NOW)
    result = _submit(db, service)

    assert db.get(LoanApplication, result.application_id) is not None


def test_audit_log_is_append_only(db, service):
    application_id = _submit(db, service).application_id
    entry = service.audit.list_for_entity("loan_application", application_id)[0]

    entry.action = "tampered"
    with pytest.raises(ValueError):
        db.flush()
    db.rollback()


def test_marketplace_views(db, service):
    application_id = _submit(db, service).application_id
    _bank_offer(db, service, application_id, rate=0.165)

    [(application, pending, best_rate)] = service.list_user_applications("patient-1")
    assert application.id == application_id
    assert pending == 2
    assert best_rate == pytest.approx(0.165)

    [(open_application, offer_count)] = service.list_pending_applications()
    assert open_application.id == application_id
    assert offer_count == 2

    with pytest.raises(ApplicationNotFoundError):
        service.get_user_application(application_id, "someone-else")

    bank_offer = next(o for o, l in service.get_application_offers(application_id) if l.code == "BANKX")
    service.accept_offer(bank_offer.id, "patient-1")
    db.commit()

    stats = service.get_marketplace_stats()
    assert stats["awaiting_selection"] == 0
    assert stats["pending_offers"] == 0
    assert stats["active_lenders"] == 2

    performance = {s["lender_code"]: s for s in service.get_lender_stats()}
    assert performance["BANKX"]["offers_accepted"] == 1
    assert performance["BANKX"]["acceptance_rate"] == 1.0
    assert performance["BANKX"]["funded_volume"] == 20000
    assert performance["PAYSICK"]["offers_accepted"] == 0
    assert [l.code for l in service.list_lenders()] == ["BANKX", "PAYSICK"]
