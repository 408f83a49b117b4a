"""Domain models - pure Python dataclasses representing business entities"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional


class RiskDecisionOutcome:
    APPROVE = "approve"
    REVIEW = "review"
    DECLINE = "decline"


class RiskTier:
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class ApplicationStatus:
    SUBMITTED = "SUBMITTED"
    UNDERWRITING = "UNDERWRITING"
    OFFERS_RECEIVED = "OFFERS_RECEIVED"
    OFFER_SELECTED = "OFFER_SELECTED"

    OPEN = (SUBMITTED, UNDERWRITING, OFFERS_RECEIVED)


class OfferStatus:
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"


class LenderType:
    PAYSICK_BALANCE_SHEET = "PAYSICK_BALANCE_SHEET"
    BANK = "BANK"
    ALTERNATIVE = "ALTERNATIVE"


@dataclass
class ApplicationBehavior:
    """Snapshot of how the patient filled in the application form"""

    completion_time_seconds: float = 180
    application_hour: int = 12
    device_type: str = "desktop"
    location_consistent: bool = True
    form_edits_count: int = 2


@dataclass
class HealthScoreComponents:
    """Sub-scores (0-100) feeding the health payment score"""

    medical_aid: Optional[float]
    medication_adherence: Optional[float]
    provider_payment: Optional[float]
    procedure_outcome: Optional[float] = 65
    healthcare_utilization: Optional[float] = 60


@dataclass
class HealthScore:
    """Healthcare bureau score for a patient"""

    score: int
    band: str  # excellent | good | fair | poor
    components: HealthScoreComponents
    family_support_indicator: float = 0.5


@dataclass
class ProcedureRiskProfile:
    """Risk characteristics of a procedure (ICD-10 or by name)"""

    base_pd_risk: float
    base_lgd_risk: float
    necessity_score: float
    typical_amount_min: float = 5000
    typical_amount_max: float = 50000
    recovery_time_days: int = 14
    success_rate: float = 90
    icd10_code: Optional[str] = None


@dataclass
class ProviderPerformance:
    """Repayment performance of loans originated at a provider"""

    performance_score: float
    is_network_partner: bool
    default_rate: float
    partnership_tier: Optional[str] = None


@dataclass
class AffordabilityResult:
    """Healthcare-specific debt service capacity"""

    monthly_income: float
    monthly_debt_obligations: float
    medical_aid_premium: float
    healthcare_dti: float
    total_dti: float
    disposable_income: float
    healthcare_capacity: float
    requested_monthly_payment: float
    affordability_band: str  # high | medium | low | insufficient
    affordability_score: int
    max_monthly_payment: float
    max_loan_amount: float


@dataclass
class PDComponents:
    health_score: float
    procedure_risk: float
    affordability: float
    provider: float
    behavioral: float


@dataclass
class PDResult:
    """Probability of Default"""

    score: float
    band: str
    components: PDComponents


@dataclass
class LGDComponents:
    medical_aid_recovery: float
    family_support: float
    procedure_value: float
    provider_recovery: float


@dataclass
class LGDResult:
    """Loss Given Default"""

    score: float
    band: str
    components: LGDComponents


@dataclass
class ExpectedLoss:
    exposure: float
    amount: float
    rate: float


@dataclass
class RiskDecision:
    decision: str  # approve | review | decline
    reason: str
    confidence: float


@dataclass
class Pricing:
    base_rate: float
    risk_premium: float
    final_rate: float


@dataclass
class RiskAssessmentParams:
    """Inputs to a risk evaluation"""

    user_id: str
    application_id: str
    loan_amount: float
    procedure_type: Optional[str] = None
    icd10_code: Optional[str] = None
    provider_id: Optional[str] = None
    monthly_income: float = 0
    existing_debt: float = 0
    medical_aid_scheme: Optional[str] = None
    medical_aid_option: Optional[str] = None
    has_chronic_conditions: bool = False
    application_behavior: Optional[ApplicationBehavior] = None


@dataclass
class RiskAssessmentResult:
    """Output of the risk assessment engine"""

    assessment_id: uuid.UUID
    application_id: str
    user_id: str
    pd: PDResult
    lgd: LGDResult
    expected_loss: ExpectedLoss
    decision: RiskDecision
    pricing: Pricing
    recommended_term: int
    max_approved_amount: float
    health_score: int
    affordability_band: str
    model_version: str
    model_confidence: float
    procedure_type: Optional[str] = None


@dataclass
class RepaymentInstallment:
    """Single payment in an amortized repayment schedule"""

    payment_number: int
    scheduled_date: date
    scheduled_amount: float
    principal_portion: float
    interest_portion: float


@dataclass
class OfferTerms:
    """Priced terms of a lender offer"""

    amount: float
    rate: float
    term: int
    monthly_payment: float
    total_repayable: float
    origination_fee: float


@dataclass
class SubmissionParams:
    """Pre-approved loan handed to the marketplace"""

    user_id: str
    procedure_type: str
    loan_amount: float
    requested_term: int
    provider_id: Optional[str] = None
    procedure_code: Optional[str] = None
    procedure_description: Optional[str] = None
    application_id: Optional[str] = None

    risk_score: Optional[float] = None
    affordability_score: Optional[float] = None
    debt_to_income_ratio: Optional[float] = None
    monthly_income: Optional[float] = None
    employment_status: Optional[str] = None
    employment_duration_months: Optional[int] = None

    recommended_rate: Optional[float] = None
    recommended_term: Optional[int] = None
    recommended_monthly_payment: Optional[float] = None

    bureau_check_id: Optional[str] = None
    bureau_score: Optional[int] = None

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class LenderNotification:
    """Loan package queued for delivery to a lender webhook"""

    lender_code: str
    lender_name: str
    webhook_url: str
    api_key: Optional[str]
    payload: Dict[str, Any]


@dataclass
class SubmissionResult:
    application_id: uuid.UUID
    eligible_lenders: int
    notifications: List[LenderNotification] = field(default_factory=list)


@dataclass
class LenderResponse:
    """Lender answer to a loan package (webhook or manual entry)"""

    application_id: str
    lender_code: str
    accepted: bool
    adjusted_rate: Optional[float] = None
    adjusted_term: Optional[int] = None
    reason: Optional[str] = None
    lender_notes: Optional[str] = None
    conditions: Optional[str] = None


@dataclass
class AcceptedOffer:
    loan_id: uuid.UUID
    offer_id: uuid.UUID
    application_id: uuid.UUID


@dataclass
class ApprovedLoan:
    """Loan approved upstream, possibly with gaps in underwriting data"""

    user_id: str
    procedure_type: str
    loan_amount: float
    requested_term: int
    provider_id: Optional[str] = None
    procedure_code: Optional[str] = None
    procedure_description: Optional[str] = None
    application_id: Optional[str] = None

    existing_risk_score: Optional[float] = None
    existing_affordability_score: Optional[float] = None
    existing_debt_to_income_ratio: Optional[float] = None
    existing_monthly_income: Optional[float] = None
    existing_employment_status: Optional[str] = None
    existing_employment_duration_months: Optional[int] = None
    existing_recommended_rate: Optional[float] = None
    existing_recommended_term: Optional[int] = None
    existing_monthly_payment: Optional[float] = None

    bureau_check_id: Optional[str] = None
    bureau_score: Optional[int] = None

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class MarketplaceEvent:
    """Something that happened in the marketplace or risk engine"""

    name: str
    payload: Dict[str, Any]
    occurred_at: datetime
