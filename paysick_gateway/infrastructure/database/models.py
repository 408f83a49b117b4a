"""SQLAlchemy ORM models for risk assessment and the lender marketplace"""

import uuid
from sqlalchemy import (
    Column, String, Boolean, Float, DateTime, Date, Integer, ForeignKey, Text, JSON, Uuid,
    UniqueConstraint, event,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class PatientHealthScore(Base):
    """Healthcare bureau score, one row per patient"""

    __tablename__ = "patient_health_score"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, unique=True)
    health_payment_score = Column(Integer, nullable=False)
    score_band = Column(Text, nullable=False)
    medical_aid_score = Column(Float, nullable=True)
    medication_adherence_score = Column(Float, nullable=True)
    provider_payment_score = Column(Float, nullable=True)
    procedure_outcome_score = Column(Float, nullable=True)
    healthcare_utilization_score = Column(Float, nullable=True)
    chronic_conditions_count = Column(Integer, nullable=False, default=0)
    active_medical_aid = Column(Boolean, nullable=False, default=False)
    medical_aid_scheme = Column(Text, nullable=True)
    medical_aid_option = Column(Text, nullable=True)
    family_support_indicator = Column(Float, nullable=False, default=0.5)
    score_calculated_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class HealthcareAffordability(Base):
    """Current affordability snapshot, one row per patient"""

    __tablename__ = "healthcare_affordability"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, unique=True)
    declared_income = Column(Float, nullable=False)
    monthly_debt_obligations = Column(Float, nullable=False)
    medical_aid_premium = Column(Float, nullable=False)
    healthcare_dti = Column(Float, nullable=False)
    total_dti = Column(Float, nullable=False)
    disposable_income = Column(Float, nullable=False)
    healthcare_capacity = Column(Float, nullable=False)
    affordability_band = Column(Text, nullable=False)
    affordability_score = Column(Integer, nullable=False)
    max_monthly_payment = Column(Float, nullable=False)
    max_loan_amount = Column(Float, nullable=False)
    assessed_at = Column(DateTime(timezone=True), nullable=False)


class RiskAssessment(Base):
    """Immutable PD/LGD evaluation of one application attempt"""

    __tablename__ = "healthcare_risk_assessment"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    application_id = Column(Text, nullable=False, index=True)
    user_id = Column(Text, nullable=False, index=True)

    pd_score = Column(Float, nullable=False)
    pd_band = Column(Text, nullable=False)
    pd_health_score_component = Column(Float, nullable=False)
    pd_procedure_risk_component = Column(Float, nullable=False)
    pd_affordability_component = Column(Float, nullable=False)
    pd_provider_component = Column(Float, nullable=False)
    pd_behavioral_component = Column(Float, nullable=False)

    lgd_score = Column(Float, nullable=False)
    lgd_band = Column(Text, nullable=False)
    lgd_medical_aid_component = Column(Float, nullable=False)
    lgd_family_support_component = Column(Float, nullable=False)
    lgd_procedure_value_component = Column(Float, nullable=False)
    lgd_provider_recovery_component = Column(Float, nullable=False)

    exposure_at_default = Column(Float, nullable=False)
    expected_loss = Column(Float, nullable=False)
    expected_loss_rate = Column(Float, nullable=False)

    risk_decision = Column(Text, nullable=False)
    decision_reason = Column(Text, nullable=True)
    decision_confidence = Column(Float, nullable=False)
    risk_adjusted_rate = Column(Float, nullable=False)
    recommended_term_months = Column(Integer, nullable=False)
    max_approved_amount = Column(Float, nullable=False)
    procedure_type = Column(Text, nullable=True)
    health_payment_score = Column(Integer, nullable=True)
    affordability_band = Column(Text, nullable=True)

    model_version = Column(Text, nullable=False)
    model_confidence = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ProcedureRiskWeight(Base):
    """Reference risk profile of a procedure"""

    __tablename__ = "procedure_risk_weight"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    icd10_code = Column(Text, nullable=True, index=True)
    icd10_category = Column(Text, nullable=True)
    procedure_name = Column(Text, nullable=False)
    base_pd_risk = Column(Float, nullable=False)
    base_lgd_risk = Column(Float, nullable=False)
    emergency_factor = Column(Float, nullable=False, default=1.0)
    typical_amount_min = Column(Float, nullable=True)
    typical_amount_max = Column(Float, nullable=True)
    recovery_time_days = Column(Integer, nullable=True)
    success_rate = Column(Float, nullable=True)
    status = Column(Text, nullable=False, default="active")


class Provider(Base):
    """Healthcare provider as seen by the risk engine"""

    __tablename__ = "provider"

    id = Column(Text, primary_key=True)
    provider_name = Column(Text, nullable=False)
    network_partner = Column(Boolean, nullable=False, default=False)
    partnership_tier = Column(Text, nullable=True)


class Lender(Base):
    """Marketplace participant funding loans"""

    __tablename__ = "lender"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    code = Column(Text, nullable=False, unique=True)
    type = Column(Text, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    min_loan_amount = Column(Float, nullable=False)
    max_loan_amount = Column(Float, nullable=False)
    min_risk_score = Column(Float, nullable=False, default=0)
    max_risk_score = Column(Float, nullable=False, default=100)
    min_term = Column(Integer, nullable=True)
    max_term = Column(Integer, nullable=True)
    base_rate = Column(Float, nullable=False)
    risk_premium_low = Column(Float, nullable=True)
    risk_premium_mid = Column(Float, nullable=True)
    risk_premium_high = Column(Float, nullable=True)
    webhook_url = Column(Text, nullable=True)
    api_key = Column(Text, nullable=True)
    contact_email = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    offers = relationship("LenderOffer", back_populates="lender")


class LoanApplication(Base):
    """Pre-approved loan shopped to lenders"""

    __tablename__ = "loan_application"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    provider_id = Column(Text, nullable=True)
    procedure_type = Column(Text, nullable=False)
    procedure_code = Column(Text, nullable=True)
    procedure_description = Column(Text, nullable=True)
    loan_amount = Column(Float, nullable=False)
    requested_term = Column(Integer, nullable=False)

    risk_score = Column(Float, nullable=True)
    risk_tier = Column(Text, nullable=False)
    affordability_score = Column(Float, nullable=True)
    debt_to_income_ratio = Column(Float, nullable=True)
    monthly_income = Column(Float, nullable=True)
    employment_status = Column(Text, nullable=True)
    employment_duration_months = Column(Integer, nullable=True)

    recommended_rate = Column(Float, nullable=True)
    recommended_term = Column(Integer, nullable=True)
    recommended_monthly_payment = Column(Float, nullable=True)

    bureau_check_id = Column(Text, nullable=True)
    bureau_check_date = Column(DateTime(timezone=True), nullable=True)
    bureau_score = Column(Integer, nullable=True)

    status = Column(Text, nullable=False, default="SUBMITTED", index=True)
    submitted_at = Column(DateTime(timezone=True), nullable=False)
    offers_deadline = Column(DateTime(timezone=True), nullable=False)
    underwriting_completed_at = Column(DateTime(timezone=True), nullable=True)
    decision_at = Column(DateTime(timezone=True), nullable=True)
    selected_offer_id = Column(Uuid, nullable=True)

    ip_address = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    offers = relationship("LenderOffer", back_populates="application")


class LenderOffer(Base):
    """A lender's bid on an application; one per (application, lender)"""

    __tablename__ = "lender_offer"
    __table_args__ = (UniqueConstraint("application_id", "lender_id", name="uq_offer_application_lender"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    application_id = Column(Uuid, ForeignKey("loan_application.id"), nullable=False, index=True)
    lender_id = Column(Uuid, ForeignKey("lender.id"), nullable=False)
    approved_amount = Column(Float, nullable=False)
    interest_rate = Column(Float, nullable=False)
    term = Column(Integer, nullable=False)
    monthly_payment = Column(Float, nullable=False)
    total_repayable = Column(Float, nullable=False)
    origination_fee = Column(Float, nullable=False)
    status = Column(Text, nullable=False, default="PENDING")
    expires_at = Column(DateTime(timezone=True), nullable=False)
    lender_notes = Column(Text, nullable=True)
    conditions = Column(Text, nullable=True)
    decline_reason = Column(Text, nullable=True)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)

    application = relationship("LoanApplication", back_populates="offers")
    lender = relationship("Lender", back_populates="offers")


class MarketplaceLoan(Base):
    """Loan created from the single accepted offer of an application"""

    __tablename__ = "marketplace_loan"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    application_id = Column(Uuid, ForeignKey("loan_application.id"), nullable=False, unique=True)
    offer_id = Column(Uuid, ForeignKey("lender_offer.id"), nullable=False, unique=True)
    lender_id = Column(Uuid, ForeignKey("lender.id"), nullable=False)
    user_id = Column(Text, nullable=False, index=True)
    provider_id = Column(Text, nullable=True, index=True)
    principal_amount = Column(Float, nullable=False)
    interest_rate = Column(Float, nullable=False)
    term = Column(Integer, nullable=False)
    monthly_payment = Column(Float, nullable=False)
    total_repayable = Column(Float, nullable=False)
    origination_fee = Column(Float, nullable=False)
    total_fees = Column(Float, nullable=False)
    status = Column(Text, nullable=False, default="PENDING_DISBURSEMENT")
    outstanding_principal = Column(Float, nullable=False)
    total_outstanding = Column(Float, nullable=False)
    first_payment_date = Column(Date, nullable=False)
    maturity_date = Column(Date, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    lender = relationship("Lender")
    repayments = relationship(
        "LoanRepayment",
        back_populates="loan",
        order_by="LoanRepayment.payment_number",
    )


class LoanRepayment(Base):
    """Scheduled installment of a marketplace loan"""

    __tablename__ = "loan_repayment"
    __table_args__ = (UniqueConstraint("loan_id", "payment_number", name="uq_repayment_number"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    loan_id = Column(Uuid, ForeignKey("marketplace_loan.id"), nullable=False)
    user_id = Column(Text, nullable=False, index=True)
    payment_number = Column(Integer, nullable=False)
    scheduled_date = Column(Date, nullable=False)
    scheduled_amount = Column(Float, nullable=False)
    principal_portion = Column(Float, nullable=False)
    interest_portion = Column(Float, nullable=False)
    status = Column(Text, nullable=False, default="SCHEDULED")
    paid_date = Column(Date, nullable=True)
    paid_amount = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    loan = relationship("MarketplaceLoan", back_populates="repayments")


class MarketplaceAuditLog(Base):
    """Append-only audit trail for investors and regulators"""

    __tablename__ = "marketplace_audit_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_type = Column(Text, nullable=False)
    entity_id = Column(Text, nullable=False, index=True)
    action = Column(Text, nullable=False)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    performed_by = Column(Text, nullable=True)
    performed_by_type = Column(Text, nullable=False, default="system")
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


def _refuse_mutation(mapper, connection, target):
    raise ValueError(f"{type(target).__name__} records are immutable")


for _immutable in (RiskAssessment, MarketplaceAuditLog):
    event.listen(_immutable, "before_update", _refuse_mutation)
    event.listen(_immutable, "before_delete", _refuse_mutation)
