"""Integration tests for API endpoints"""

import json
import uuid
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY
from paysick_gateway.api.dependencies import get_risk_service
from paysick_gateway.config import settings
from paysick_gateway.domain.models import ProcedureRiskProfile, ProviderPerformance
from paysick_gateway.infrastructure.database.models import MarketplaceAuditLog
from paysick_gateway.services.risk_assessment import RiskAssessmentService
from paysick_gateway.utils.signing import SIGNATURE_HEADER, sign_payload

PATIENT = {"X-User-ID": "patient-1"}
ADMIN = {"X-User-ID": "ops-1", "X-User-Role": "admin"}
BANK_SECRET = "bankx-webhook-secret"

STRONG_APPLICATION = {
    "procedure_type": "Mastectomy",
    "procedure_code": "C50.9",
    "provider_id": "prov-netcare-01",
    "loan_amount": 15000,
    "requested_term": 6,
    "monthly_income": 40000,
    "existing_debt": 2000,
    "medical_aid_scheme": "Discovery",
    "medical_aid_option": "Classic Comprehensive",
    "employment_status": "EMPLOYED",
}


@pytest.fixture
def scored_client(client: TestClient, db) -> TestClient:
    """Client whose risk engine reads fixed, healthy data sources"""

    def strong_risk_service():
        return RiskAssessmentService(
            db,
            medical_aid_source=SimpleNamespace(score=lambda scheme: 85),
            medication_source=SimpleNamespace(score=lambda chronic: 80),
            payment_history_source=SimpleNamespace(score=lambda user_id: 90),
            procedure_source=SimpleNamespace(
                profile=lambda name, code: ProcedureRiskProfile(
                    base_pd_risk=20, base_lgd_risk=30, necessity_score=0.85, icd10_code="C50.9"
                )
            ),
            provider_source=SimpleNamespace(
                performance=lambda provider_id: ProviderPerformance(
                    performance_score=90, is_network_partner=True, default_rate=0.01
                )
            ),
        )

    client.app.dependency_overrides[get_risk_service] = strong_risk_service
    return client


def _signed_webhook(client: TestClient, payload: dict, secret: str = BANK_SECRET):
    body = json.dumps(payload).encode("utf-8")
    return client.post(
        "/v1/marketplace/webhooks/offer-response",
        content=body,
        headers={"Content-Type": "application/json", SIGNATURE_HEADER: sign_payload(body, secret)},
    )


def _bypass_count():
    return REGISTRY.get_sample_value("webhook_signature_bypass_total") or 0


def test_health_endpoint(client: TestClient):
    """Test health check endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_metrics_endpoint(client: TestClient):
    """Test Prometheus metrics endpoint"""
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "paysick_risk_decision_total" in response.text
    assert "webhook_latency_seconds" in response.text


def test_request_id_is_propagated(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_risk_assessment_endpoint(client: TestClient):
    """Test POST /v1/risk/assessments with default data sources"""
    patient = {"X-User-ID": "patient-9"}
    response = client.post(
        "/v1/risk/assessments",
        json={
            "application_id": "app-9",
            "loan_amount": 15000,
            "procedure_type": "Knee arthroscopy",
            "monthly_income": 40000,
        },
        headers=patient,
    )

    assert response.status_code == 201
    data = response.json()
    assert data["user_id"] == "patient-9"
    # uninsured, new customer, unknown procedure and provider
    assert data["health_score"] == 54
    assert data["pd"]["score"] == pytest.approx(0.0525)
    assert data["lgd"]["score"] == pytest.approx(0.63)
    assert data["expected_loss"]["rate"] == pytest.approx(0.033075)
    assert data["decision"]["decision"] == "review"
    assert set(data["pd"]["components"]) == {"health_score", "procedure_risk", "affordability", "provider", "behavioral"}

    stored = client.get("/v1/risk/assessments/app-9", headers=patient)
    assert stored.status_code == 200
    assert stored.json()["risk_decision"] == "review"
    assert stored.json()["assessment_id"] == data["assessment_id"]

    health = client.get("/v1/risk/health-score/patient-9", headers=patient)
    assert health.status_code == 200
    assert health.json()["medical_aid_score"] == 40
    assert health.json()["active_medical_aid"] is False


def test_risk_assessment_validation(client: TestClient):
    response = client.post("/v1/risk/assessments", json={"loan_amount": 0}, headers=PATIENT)
    assert response.status_code == 422


def test_risk_lookups_not_found(client: TestClient):
    assert client.get("/v1/risk/assessments/unknown", headers=PATIENT).status_code == 404
    assert client.get("/v1/risk/health-score/unknown", headers=ADMIN).status_code == 404


def test_risk_endpoints_require_user(client: TestClient):
    response = client.post("/v1/risk/assessments", json={"user_id": "patient-1", "loan_amount": 15000})
    assert response.status_code == 401
    assert client.get("/v1/risk/assessments/app-1").status_code == 401
    assert client.get("/v1/risk/health-score/patient-1").status_code == 401


def test_patient_cannot_act_for_another_patient(client: TestClient):
    """Test assessments and health scores stay with their owner"""
    other = {"X-User-ID": "patient-2"}
    forged = client.post(
        "/v1/risk/assessments",
        json={"user_id": "patient-2", "loan_amount": 15000, "monthly_income": 40000},
        headers=PATIENT,
    )
    assert forged.status_code == 403

    own = client.post(
        "/v1/risk/assessments",
        json={"user_id": "patient-1", "application_id": "app-own", "loan_amount": 15000, "monthly_income": 40000},
        headers=PATIENT,
    )
    assert own.status_code == 201

    assert client.get("/v1/risk/assessments/app-own", headers=other).status_code == 404
    assert client.get("/v1/risk/health-score/patient-1", headers=other).status_code == 403

    # admins see every patient and may assess on their behalf
    assert client.get("/v1/risk/assessments/app-own", headers=ADMIN).status_code == 200
    assert client.get("/v1/risk/health-score/patient-1", headers=ADMIN).status_code == 200
    on_behalf = client.post(
        "/v1/risk/assessments",
        json={"user_id": "patient-2", "loan_amount": 15000, "monthly_income": 40000},
        headers=ADMIN,
    )
    assert on_behalf.status_code == 201
    assert on_behalf.json()["user_id"] == "patient-2"


def test_portfolio_endpoints_require_admin(client: TestClient):
    assert client.get("/v1/risk/portfolio-summary").status_code == 401
    assert client.get("/v1/risk/portfolio-summary", headers=PATIENT).status_code == 403

    response = client.get("/v1/risk/portfolio-summary", headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["summary"]["total_assessments"] == 0
    assert response.json()["targets"]["target_pd"] == 0.032

    distribution = client.get("/v1/risk/distribution", headers=ADMIN)
    assert distribution.status_code == 200
    assert distribution.json()["distribution"] == []


def test_health_and_procedure_reports(client: TestClient):
    for path in ("/v1/risk/health-score-distribution", "/v1/risk/procedure-risk"):
        assert client.get(path).status_code == 401
        assert client.get(path, headers=PATIENT).status_code == 403

    client.post(
        "/v1/risk/assessments",
        json={"loan_amount": 15000, "procedure_type": "Knee arthroscopy", "monthly_income": 40000},
        headers=PATIENT,
    )

    bands = client.get("/v1/risk/health-score-distribution", headers=ADMIN)
    assert bands.status_code == 200
    assert bands.json()["distribution"] == [
        {
            "score_band": "fair",
            "patient_count": 1,
            "avg_score": 54,
            "avg_medical_aid": 40,
            "avg_medication": 70,
            "avg_provider_payment": 50,
            "with_medical_aid": 0,
        }
    ]

    procedures = client.get("/v1/risk/procedure-risk", headers=ADMIN)
    assert procedures.status_code == 200
    [knee] = procedures.json()["procedure_risk"]
    assert knee["procedure_type"] == "Knee arthroscopy"
    assert knee["assessments"] == 1
    assert knee["total_exposure"] == 15000
    assert knee["avg_pd"] == pytest.approx(0.0525)


def test_affordability_endpoints(client: TestClient):
    patient = {"X-User-ID": "patient-3"}
    response = client.post(
        "/v1/affordability",
        json={"monthly_income": 15000, "existing_debt": 2000, "loan_amount": 9000},
        headers=patient,
    )

    assert response.status_code == 200
    assert response.json()["affordability_band"] == "low"
    assert response.json()["healthcare_capacity"] == 3900

    snapshot = client.get("/v1/affordability/patient-3", headers=patient)
    assert snapshot.status_code == 200
    assert snapshot.json()["declared_income"] == 15000

    assert client.get("/v1/affordability/unknown", headers=ADMIN).status_code == 404


def test_affordability_is_private_to_the_patient(client: TestClient):
    body = {"monthly_income": 15000, "existing_debt": 2000, "loan_amount": 9000}
    assert client.post("/v1/affordability", json=body).status_code == 401
    assert client.post("/v1/affordability", json={**body, "user_id": "patient-3"}, headers=PATIENT).status_code == 403

    assert client.post("/v1/affordability", json=body, headers=PATIENT).status_code == 200
    assert client.get("/v1/affordability/patient-1", headers={"X-User-ID": "patient-3"}).status_code == 403
    assert client.get("/v1/affordability/patient-1", headers=ADMIN).status_code == 200


def test_application_requires_user(client: TestClient, lenders):
    response = client.post("/v1/marketplace/applications", json=STRONG_APPLICATION)
    assert response.status_code == 401


def test_application_amount_out_of_range(client: TestClient, lenders):
    response = client.post("/v1/marketplace/applications", json={**STRONG_APPLICATION, "loan_amount": 500}, headers=PATIENT)
    assert response.status_code == 422


def test_patient_flow_end_to_end(scored_client: TestClient, lenders, webhook_requests):
    """Test apply -> auction -> lender webhook -> accept -> repayment schedule"""
    response = scored_client.post("/v1/marketplace/applications", json=STRONG_APPLICATION, headers=PATIENT)

    assert response.status_code == 201
    submitted = response.json()
    assert submitted["status"] == "SUBMITTED"
    assert submitted["eligible_lenders"] == 2
    application_id = submitted["application_id"]

    # The webhook lender was notified with a signed loan package
    assert len(webhook_requests) == 1
    package = webhook_requests[0]
    assert json.loads(package.content)["application_id"] == application_id
    assert package.headers[SIGNATURE_HEADER] == sign_payload(package.content, BANK_SECRET)

    offers = scored_client.get(f"/v1/marketplace/applications/{application_id}/offers", headers=PATIENT).json()["offers"]
    assert [o["lender_code"] for o in offers] == ["PAYSICK"]
    assert offers[0]["interest_rate"] == pytest.approx(0.20)

    webhook = _signed_webhook(
        scored_client,
        {"application_id": application_id, "lender_code": "BANKX", "accepted": True, "adjusted_rate": 0.17},
    )
    assert webhook.status_code == 200
    assert webhook.json()["declined"] is False
    bank_offer_id = webhook.json()["offer_id"]

    detail = scored_client.get(f"/v1/marketplace/applications/{application_id}", headers=PATIENT).json()
    assert detail["application"]["status"] == "OFFERS_RECEIVED"
    assert detail["application"]["pending_offers"] == 2
    assert detail["application"]["best_rate"] == pytest.approx(0.17)
    assert detail["offers"][0]["offer_id"] == bank_offer_id

    accepted = scored_client.post(f"/v1/marketplace/offers/{bank_offer_id}/accept", headers=PATIENT)
    assert accepted.status_code == 200
    loan_id = accepted.json()["loan_id"]

    loans = scored_client.get("/v1/marketplace/loans", headers=PATIENT).json()["loans"]
    assert len(loans) == 1
    assert loans[0]["lender_name"] == "Bank X Health Finance"
    assert loans[0]["completed_payments"] == 0

    schedule = scored_client.get(f"/v1/marketplace/loans/{loan_id}/repayments", headers=PATIENT).json()
    assert len(schedule["repayments"]) == 6
    assert all(r["status"] == "SCHEDULED" for r in schedule["repayments"])

    paysick_offer_id = next(o["offer_id"] for o in offers if o["lender_code"] == "PAYSICK")
    again = scored_client.post(f"/v1/marketplace/offers/{paysick_offer_id}/accept", headers=PATIENT)
    assert again.status_code == 409


def test_accept_other_users_offer_is_forbidden(scored_client: TestClient, lenders):
    application_id = scored_client.post(
        "/v1/marketplace/applications", json=STRONG_APPLICATION, headers=PATIENT
    ).json()["application_id"]
    offer_id = scored_client.get(
        f"/v1/marketplace/applications/{application_id}/offers", headers=PATIENT
    ).json()["offers"][0]["offer_id"]

    response = scored_client.post(f"/v1/marketplace/offers/{offer_id}/accept", headers={"X-User-ID": "intruder"})
    assert response.status_code == 403

    assert scored_client.get(f"/v1/marketplace/applications/{application_id}", headers={"X-User-ID": "intruder"}).status_code == 404
    assert scored_client.post("/v1/marketplace/offers/not-an-id/accept", headers=PATIENT).status_code == 404


def test_amount_above_affordable_maximum_goes_to_review(scored_client: TestClient, lenders):
    """Test an approval capped below the requested amount is queued for review"""
    response = scored_client.post(
        "/v1/marketplace/applications",
        json={**STRONG_APPLICATION, "loan_amount": 30000},
        headers=PATIENT,
    )

    assert response.status_code == 202
    assert response.json()["status"] == "MANUAL_REVIEW"
    assert response.json()["assessment_id"] is not None


def test_review_decision_goes_to_manual_review(client: TestClient, lenders):
    response = client.post(
        "/v1/marketplace/applications",
        json={"procedure_type": "Knee arthroscopy", "loan_amount": 15000, "requested_term": 6, "monthly_income": 40000},
        headers=PATIENT,
    )

    assert response.status_code == 202
    assert response.json()["status"] == "MANUAL_REVIEW"
    assert client.get("/v1/marketplace/applications", headers=PATIENT).json()["applications"] == []


def test_decline_decision(client: TestClient, lenders):
    response = client.post(
        "/v1/marketplace/applications",
        json={
            "procedure_type": "Knee arthroscopy",
            "loan_amount": 15000,
            "requested_term": 6,
            "monthly_income": 0,
            "application_behavior": {
                "completion_time_seconds": 20,
                "application_hour": 3,
                "location_consistent": False,
                "form_edits_count": 15,
            },
        },
        headers=PATIENT,
    )

    assert response.status_code == 200
    assert response.json()["status"] == "DECLINED"


def test_scoring_failure_goes_to_manual_review(client: TestClient, db, lenders):
    """Test an unexpected engine error is audited and queued, never lost"""

    def broken_procedure(name, code):
        raise RuntimeError("procedure table corrupted")

    client.app.dependency_overrides[get_risk_service] = lambda: RiskAssessmentService(
        db, procedure_source=SimpleNamespace(profile=broken_procedure)
    )

    response = client.post("/v1/marketplace/applications", json=STRONG_APPLICATION, headers=PATIENT)

    assert response.status_code == 202
    assert response.json()["status"] == "MANUAL_REVIEW"
    audit = db.query(MarketplaceAuditLog).filter(MarketplaceAuditLog.action == "risk_assessment_failed").one()
    assert audit.entity_id == response.json()["application_id"]


def test_webhook_with_bad_signature_outside_production(scored_client: TestClient, lenders):
    application_id = scored_client.post(
        "/v1/marketplace/applications", json=STRONG_APPLICATION, headers=PATIENT
    ).json()["application_id"]
    before = _bypass_count()

    response = _signed_webhook(
        scored_client,
        {"application_id": application_id, "lender_code": "BANKX", "accepted": True},
        secret="wrong-secret",
    )

    assert response.status_code == 200
    assert _bypass_count() == before + 1


def test_webhook_with_bad_signature_in_production(scored_client: TestClient, lenders, monkeypatch):
    application_id = scored_client.post(
        "/v1/marketplace/applications", json=STRONG_APPLICATION, headers=PATIENT
    ).json()["application_id"]
    monkeypatch.setattr(settings, "environment", "production")

    response = _signed_webhook(
        scored_client,
        {"application_id": application_id, "lender_code": "BANKX", "accepted": True},
        secret="wrong-secret",
    )

    assert response.status_code == 401
    offers = scored_client.get(f"/v1/marketplace/applications/{application_id}/offers", headers=PATIENT).json()["offers"]
    assert len(offers) == 1


def test_webhook_unknown_application(client: TestClient, lenders):
    response = _signed_webhook(
        client,
        {"application_id": "00000000-0000-0000-0000-000000000000", "lender_code": "BANKX", "accepted": True},
    )
    assert response.status_code == 404


def test_webhook_malformed_body(client: TestClient, lenders):
    response = client.post(
        "/v1/marketplace/webhooks/offer-response",
        content=b'{"lender_code": "BANKX"}',
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 422


def test_admin_endpoints(client: TestClient, lenders, webhook_requests):
    assert client.get("/v1/marketplace/admin/stats", headers=PATIENT).status_code == 403

    submitted = client.post(
        "/v1/marketplace/admin/approved-loans",
        json={
            "user_id": "patient-7",
            "procedure_type": "Hip replacement",
            "loan_amount": 60000,
            "requested_term": 12,
            "existing_risk_score": 82,
        },
        headers=ADMIN,
    )
    assert submitted.status_code == 201
    assert submitted.json()["eligible_lenders"] == 2
    assert submitted.json()["notified_lenders"] == 1
    assert len(webhook_requests) == 1
    application_id = submitted.json()["application_id"]

    manual = client.post(
        "/v1/marketplace/admin/manual-offers",
        json={"application_id": application_id, "lender_code": "BANKX", "accepted": True, "adjusted_rate": 0.175},
        headers=ADMIN,
    )
    assert manual.status_code == 201
    assert manual.json()["offer_id"] is not None

    pending = client.get("/v1/marketplace/admin/pending-applications", headers=ADMIN).json()["applications"]
    assert [(a["application_id"], a["offer_count"]) for a in pending] == [(application_id, 2)]

    lenders_view = client.get("/v1/marketplace/admin/lenders", headers=ADMIN).json()["lenders"]
    assert {l["lender_code"]: l["has_webhook"] for l in lenders_view} == {"BANKX": True, "PAYSICK": False}

    stats = client.get("/v1/marketplace/admin/stats", headers=ADMIN).json()
    assert stats["awaiting_selection"] == 1
    assert stats["pending_offers"] == 2
    assert stats["active_lenders"] == 2

    lender_stats = {s["lender_code"]: s for s in client.get("/v1/marketplace/admin/lender-stats", headers=ADMIN).json()["lenders"]}
    assert lender_stats["BANKX"]["offers_made"] == 1
    assert lender_stats["BANKX"]["offers_accepted"] == 0


def test_resubmitted_approved_loan_conflicts(client: TestClient, lenders, webhook_requests):
    loan = {
        "application_id": str(uuid.uuid4()),
        "user_id": "patient-8",
        "procedure_type": "Hip replacement",
        "loan_amount": 60000,
        "requested_term": 12,
        "existing_risk_score": 82,
    }

    first = client.post("/v1/marketplace/admin/approved-loans", json=loan, headers=ADMIN)
    assert first.status_code == 201
    assert first.json()["application_id"] == loan["application_id"]

    again = client.post("/v1/marketplace/admin/approved-loans", json=loan, headers=ADMIN)
    assert again.status_code == 409
    assert len(webhook_requests) == 1

    malformed = client.post("/v1/marketplace/admin/approved-loans", json={**loan, "application_id": "app-1"}, headers=ADMIN)
    assert malformed.status_code == 422
