"""Pydantic schemas for API request/response validation"""

from pydantic import BaseModel, ConfigDict, Field
from datetime import date
from typing import Dict, List, Optional


# -- Shared ------------------------------------------------------------------


class ApplicationBehaviorSchema(BaseModel):
    """How the patient filled in the application form"""

    completion_time_seconds: float = Field(180, ge=0)
    application_hour: int = Field(12, ge=0, le=23)
    device_type: str = "desktop"
    location_consistent: bool = True
    form_edits_count: int = Field(2, ge=0)


# -- Risk --------------------------------------------------------------------


class RiskAssessmentRequest(BaseModel):
    """Request body for POST /v1/risk/assessments"""

    user_id: Optional[str] = Field(None, min_length=1, description="Patient assessed; defaults to the caller, others need admin")
    application_id: Optional[str] = Field(None, description="Application being assessed; generated when omitted")
    loan_amount: float = Field(..., gt=0, description="Requested amount in rand")
    procedure_type: Optional[str] = None
    icd10_code: Optional[str] = None
    provider_id: Optional[str] = None
    monthly_income: float = Field(0, ge=0)
    existing_debt: float = Field(0, ge=0)
    medical_aid_scheme: Optional[str] = None
    medical_aid_option: Optional[str] = None
    has_chronic_conditions: bool = False
    application_behavior: Optional[ApplicationBehaviorSchema] = None


class ScoreBreakdown(BaseModel):
    score: float
    band: str
    components: Dict[str, float]


class ExpectedLossSchema(BaseModel):
    exposure: float
    amount: float
    rate: float


class DecisionSchema(BaseModel):
    decision: str
    reason: str
    confidence: float


class PricingSchema(BaseModel):
    base_rate: float
    risk_premium: float
    final_rate: float


class RiskAssessmentResponse(BaseModel):
    """Response for POST /v1/risk/assessments"""

    model_config = ConfigDict(protected_namespaces=())

    assessment_id: str
    application_id: str
    user_id: str
    pd: ScoreBreakdown
    lgd: ScoreBreakdown
    expected_loss: ExpectedLossSchema
    decision: DecisionSchema
    pricing: PricingSchema
    recommended_term: int
    max_approved_amount: float
    health_score: int
    affordability_band: str
    model_version: str
    model_confidence: float


class StoredAssessmentResponse(BaseModel):
    """Response for GET /v1/risk/assessments/{application_id}"""

    model_config = ConfigDict(protected_namespaces=())

    assessment_id: str
    application_id: str
    user_id: str
    pd_score: float
    pd_band: str
    lgd_score: float
    lgd_band: str
    exposure_at_default: float
    expected_loss: float
    expected_loss_rate: float
    risk_decision: str
    decision_reason: Optional[str] = None
    decision_confidence: float
    risk_adjusted_rate: float
    recommended_term_months: int
    max_approved_amount: float
    model_version: str
    model_confidence: float
    created_at: str


class HealthScoreResponse(BaseModel):
    """Response for GET /v1/risk/health-score/{user_id}"""

    user_id: str
    health_payment_score: int
    score_band: str
    medical_aid_score: Optional[float] = None
    medication_adherence_score: Optional[float] = None
    provider_payment_score: Optional[float] = None
    procedure_outcome_score: Optional[float] = None
    healthcare_utilization_score: Optional[float] = None
    active_medical_aid: bool
    medical_aid_scheme: Optional[str] = None
    score_calculated_at: str


class PortfolioTotals(BaseModel):
    total_assessments: int
    avg_pd: float
    avg_lgd: float
    avg_expected_loss_rate: float
    total_exposure: float
    total_expected_loss: float
    approved_count: int
    declined_count: int
    review_count: int


class PortfolioSummaryResponse(BaseModel):
    """Response for GET /v1/risk/portfolio-summary"""

    period_days: int
    summary: PortfolioTotals
    targets: Dict[str, float]
    performance_vs_target: Dict[str, float]


class RiskBandItem(BaseModel):
    pd_band: str
    count: int
    avg_pd: float
    avg_el_rate: float
    total_exposure: float


class RiskDistributionResponse(BaseModel):
    """Response for GET /v1/risk/distribution"""

    distribution: List[RiskBandItem]


class HealthScoreBandItem(BaseModel):
    score_band: str
    patient_count: int
    avg_score: Optional[int] = None
    avg_medical_aid: Optional[int] = None
    avg_medication: Optional[int] = None
    avg_provider_payment: Optional[int] = None
    with_medical_aid: int


class HealthScoreDistributionResponse(BaseModel):
    """Response for GET /v1/risk/health-score-distribution"""

    distribution: List[HealthScoreBandItem]


class ProcedureRiskItem(BaseModel):
    procedure_type: str
    assessments: int
    avg_pd: float
    avg_lgd: float
    avg_el_rate: float
    total_exposure: float
    total_expected_loss: float


class ProcedureRiskResponse(BaseModel):
    """Response for GET /v1/risk/procedure-risk"""

    procedure_risk: List[ProcedureRiskItem]


# -- Affordability -----------------------------------------------------------


class AffordabilityRequest(BaseModel):
    """Request body for POST /v1/affordability"""

    user_id: Optional[str] = Field(None, min_length=1, description="Defaults to the caller")
    monthly_income: float = Field(..., ge=0)
    existing_debt: float = Field(0, ge=0)
    loan_amount: float = Field(..., ge=0)
    medical_aid_scheme: Optional[str] = None
    medical_aid_option: Optional[str] = None


class AffordabilityResponse(BaseModel):
    """Response for POST /v1/affordability"""

    monthly_income: float
    monthly_debt_obligations: float
    medical_aid_premium: float
    healthcare_dti: float
    total_dti: float
    disposable_income: float
    healthcare_capacity: float
    requested_monthly_payment: float
    affordability_band: str
    affordability_score: int
    max_monthly_payment: float
    max_loan_amount: float


class AffordabilitySnapshotResponse(BaseModel):
    """Response for GET /v1/affordability/{user_id}"""

    user_id: str
    declared_income: float
    monthly_debt_obligations: float
    medical_aid_premium: float
    healthcare_dti: float
    disposable_income: float
    healthcare_capacity: float
    affordability_band: str
    affordability_score: int
    max_monthly_payment: float
    max_loan_amount: float
    assessed_at: str


# -- Marketplace -------------------------------------------------------------


class ApplicationRequest(BaseModel):
    """Request body for POST /v1/marketplace/applications"""

    procedure_type: str = Field(..., min_length=1)
    loan_amount: float = Field(..., ge=1000, le=500000, description="Amount in rand")
    requested_term: int = Field(..., ge=3, le=60, description="Term in months")
    provider_id: Optional[str] = None
    procedure_code: Optional[str] = Field(None, description="ICD-10 code")
    procedure_description: Optional[str] = None
    monthly_income: float = Field(0, ge=0)
    existing_debt: float = Field(0, ge=0)
    medical_aid_scheme: Optional[str] = None
    medical_aid_option: Optional[str] = None
    has_chronic_conditions: bool = False
    employment_status: Optional[str] = None
    employment_duration_months: Optional[int] = Field(None, ge=0)
    application_behavior: Optional[ApplicationBehaviorSchema] = None


class ApplicationSubmittedResponse(BaseModel):
    """Response for POST /v1/marketplace/applications"""

    status: str  # SUBMITTED | DECLINED | MANUAL_REVIEW
    message: str
    application_id: Optional[str] = None
    assessment_id: Optional[str] = None
    eligible_lenders: Optional[int] = None


class OfferSchema(BaseModel):
    """Single lender offer"""

    offer_id: str
    lender_name: str
    lender_code: str
    lender_type: str
    approved_amount: float
    interest_rate: float
    term: int
    monthly_payment: float
    total_repayable: float
    origination_fee: float
    status: str
    expires_at: str
    lender_notes: Optional[str] = None
    conditions: Optional[str] = None


class ApplicationSummary(BaseModel):
    """Application in the patient's list"""

    application_id: str
    procedure_type: str
    loan_amount: float
    requested_term: int
    risk_tier: str
    status: str
    submitted_at: str
    offers_deadline: str
    pending_offers: int = 0
    best_rate: Optional[float] = None


class ApplicationListResponse(BaseModel):
    applications: List[ApplicationSummary]


class ApplicationDetailResponse(BaseModel):
    """Response for GET /v1/marketplace/applications/{id}"""

    application: ApplicationSummary
    offers: List[OfferSchema]


class OffersResponse(BaseModel):
    application_id: str
    offers: List[OfferSchema]


class AcceptOfferResponse(BaseModel):
    """Response for POST /v1/marketplace/offers/{offer_id}/accept"""

    loan_id: str
    offer_id: str
    application_id: str
    message: str = "Offer accepted"


class LoanSummary(BaseModel):
    loan_id: str
    application_id: str
    lender_name: str
    principal_amount: float
    interest_rate: float
    term: int
    monthly_payment: float
    total_repayable: float
    origination_fee: float
    status: str
    first_payment_date: date
    maturity_date: date
    completed_payments: int


class LoanListResponse(BaseModel):
    loans: List[LoanSummary]


class RepaymentSchema(BaseModel):
    """Single installment of a loan"""

    payment_number: int
    scheduled_date: date
    scheduled_amount: float
    principal_portion: float
    interest_portion: float
    status: str


class RepaymentScheduleResponse(BaseModel):
    """Response for GET /v1/marketplace/loans/{loan_id}/repayments"""

    loan_id: str
    repayments: List[RepaymentSchema]


class LenderOfferRequest(BaseModel):
    """Lender answer to a loan package (webhook and manual entry)"""

    application_id: str = Field(..., min_length=1)
    lender_code: str = Field(..., min_length=1)
    accepted: bool
    adjusted_rate: Optional[float] = Field(None, gt=0, le=1)
    adjusted_term: Optional[int] = Field(None, ge=3, le=60)
    reason: Optional[str] = None
    lender_notes: Optional[str] = None
    conditions: Optional[str] = None


class LenderOfferResult(BaseModel):
    success: bool
    declined: bool
    offer_id: Optional[str] = None


class ApprovedLoanRequest(BaseModel):
    """Request body for POST /v1/marketplace/admin/approved-loans"""

    user_id: str = Field(..., min_length=1)
    procedure_type: str = Field(..., min_length=1)
    loan_amount: float = Field(..., ge=1000, le=500000)
    requested_term: int = Field(..., ge=3, le=60)
    application_id: Optional[str] = Field(None, description="Upstream application id, reused if given")
    provider_id: Optional[str] = None
    procedure_code: Optional[str] = None
    procedure_description: Optional[str] = None

    existing_risk_score: Optional[float] = Field(None, ge=0, le=100)
    existing_affordability_score: Optional[float] = Field(None, ge=0, le=100)
    existing_debt_to_income_ratio: Optional[float] = Field(None, ge=0)
    existing_monthly_income: Optional[float] = Field(None, ge=0)
    existing_employment_status: Optional[str] = None
    existing_employment_duration_months: Optional[int] = Field(None, ge=0)
    existing_recommended_rate: Optional[float] = Field(None, gt=0, le=1)
    existing_recommended_term: Optional[int] = Field(None, ge=3, le=60)
    existing_monthly_payment: Optional[float] = Field(None, gt=0)

    bureau_check_id: Optional[str] = None
    bureau_score: Optional[int] = None


class SubmissionResponse(BaseModel):
    application_id: str
    eligible_lenders: int
    notified_lenders: int


class PendingApplicationSchema(BaseModel):
    """Open application on the lender dashboard"""

    application_id: str
    procedure_type: str
    loan_amount: float
    requested_term: int
    risk_score: Optional[float] = None
    risk_tier: str
    affordability_score: Optional[float] = None
    status: str
    submitted_at: str
    offers_deadline: str
    offer_count: int


class PendingApplicationsResponse(BaseModel):
    applications: List[PendingApplicationSchema]


class LenderSchema(BaseModel):
    lender_code: str
    name: str
    type: str
    active: bool
    min_loan_amount: float
    max_loan_amount: float
    min_risk_score: float
    max_risk_score: float
    base_rate: float
    has_webhook: bool


class LendersResponse(BaseModel):
    lenders: List[LenderSchema]


class LenderStatsItem(BaseModel):
    lender_code: str
    lender_name: str
    offers_made: int
    offers_accepted: int
    acceptance_rate: float
    avg_offer_rate: Optional[float] = None
    funded_volume: float


class LenderStatsResponse(BaseModel):
    lenders: List[LenderStatsItem]


class MarketplaceStatsResponse(BaseModel):
    pending_applications: int
    awaiting_selection: int
    active_loans: int
    total_loaned: float
    active_lenders: int
    pending_offers: int
