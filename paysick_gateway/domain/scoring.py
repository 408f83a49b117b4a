"""Risk scoring engine - core healthcare PD/LGD model and credit decisions"""

import math
from typing import Optional

from paysick_gateway.domain.models import (
    ApplicationBehavior,
    HealthScoreComponents,
    LGDComponents,
    LGDResult,
    PDComponents,
    PDResult,
    Pricing,
    ProcedureRiskProfile,
    ProviderPerformance,
    RiskDecision,
    RiskDecisionOutcome,
)
from paysick_gateway.domain.risk_config import RiskModelConfig

ESSENTIAL_CATEGORIES = ("oncology", "cardiovascular", "obstetrics")
PARTNERSHIP_TIER_BONUS = {"platinum": 10, "gold": 7, "silver": 4}


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _round4(value: float) -> float:
    return round(value, 4)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_health_payment_score(
    components: HealthScoreComponents,
    config: RiskModelConfig = RiskModelConfig(),
) -> int:
    """
    Weighted blend of the five health sub-scores, 0-100.

    Missing sub-scores count as a neutral 50.
    """
    weights = config.health_weights

    def value(score: Optional[float]) -> float:
        return 50 if score is None else score

    score = (
        value(components.medical_aid) * weights["medical_aid"]
        + value(components.medication_adherence) * weights["medication_adherence"]
        + value(components.provider_payment) * weights["provider_payment"]
        + value(components.procedure_outcome) * weights["procedure_outcome"]
        + value(components.healthcare_utilization) * weights["healthcare_utilization"]
    )
    return _round_half_up(score)


def health_score_band(score: float) -> str:
    if score >= 80:
        return "excellent"
    if score >= 60:
        return "good"
    if score >= 40:
        return "fair"
    return "poor"


def calculate_necessity_score(emergency_factor: Optional[float], icd10_category: Optional[str]) -> float:
    """
    How essential a procedure is, 0-1.

    Emergency procedures and essential categories (oncology, cardiovascular,
    obstetrics) repay better because patients and families prioritise them.
    """
    score = 0.5

    if emergency_factor is not None and emergency_factor > 1:
        score += 0.2

    if icd10_category:
        category = icd10_category.lower()
        if any(c in category for c in ESSENTIAL_CATEGORIES):
            score += 0.15

    return min(1.0, round(score, 4))


def score_provider_performance(
    is_network_partner: bool,
    partnership_tier: Optional[str],
    completed_plans: int,
    defaulted_plans: int,
) -> ProviderPerformance:
    """
    Provider score from partnership status and historical loan outcomes.

    Base 50, +15 network partner (+10/+7/+4 for platinum/gold/silver),
    default-rate adjustment of +15/+10/-15, volume bonus of +10/+5.
    """
    total_plans = completed_plans + defaulted_plans
    default_rate = defaulted_plans / total_plans if total_plans > 0 else 0.05

    score = 50

    if is_network_partner:
        score += 15
        score += PARTNERSHIP_TIER_BONUS.get((partnership_tier or "").lower(), 0)

    if default_rate < 0.02:
        score += 15
    elif default_rate < 0.05:
        score += 10
    elif default_rate > 0.10:
        score -= 15

    if total_plans > 50:
        score += 10
    elif total_plans > 20:
        score += 5

    return ProviderPerformance(
        performance_score=_clamp(score, 0, 100),
        is_network_partner=is_network_partner,
        default_rate=default_rate,
        partnership_tier=partnership_tier,
    )


def analyze_behavioral_signals(behavior: Optional[ApplicationBehavior] = None) -> float:
    """Score how the application was filled in, 0-100 (base 60)"""
    behavior = behavior or ApplicationBehavior()
    score = 60

    # Too fast looks scripted, too slow looks hesitant
    completion = behavior.completion_time_seconds
    if completion < 60:
        score -= 15
    elif completion > 600:
        score -= 10
    elif 120 <= completion <= 300:
        score += 10

    hour = behavior.application_hour
    if 9 <= hour <= 17:
        score += 5
    elif 0 <= hour <= 5:
        score -= 10

    if behavior.device_type == "mobile":
        score += 5

    if behavior.location_consistent:
        score += 5
    else:
        score -= 10

    edits = behavior.form_edits_count
    if 1 <= edits <= 4:
        score += 5
    elif edits > 10:
        score -= 10

    return _clamp(score, 0, 100)


def pd_band(pd_score: float) -> str:
    if pd_score <= 0.02:
        return "very_low"
    if pd_score <= 0.05:
        return "low"
    if pd_score <= 0.10:
        return "medium"
    if pd_score <= 0.20:
        return "high"
    return "very_high"


def lgd_band(lgd_score: float) -> str:
    if lgd_score <= 0.20:
        return "very_low"
    if lgd_score <= 0.35:
        return "low"
    if lgd_score <= 0.50:
        return "medium"
    if lgd_score <= 0.70:
        return "high"
    return "very_high"


def calculate_pd(
    health_score: float = 50,
    procedure_risk: float = 50,
    affordability_score: float = 50,
    provider_score: float = 50,
    behavioral_score: float = 50,
    config: RiskModelConfig = RiskModelConfig(),
) -> PDResult:
    """
    Probability of Default.

    Every input is a 0-100 score. All except procedure risk are "higher is
    better" and get inverted so each component grows with risk. The weighted
    sum is calibrated onto the PD range and clamped to [pd_floor, pd_cap].
    """
    weights = config.pd_weights

    health = (100 - health_score) / 100 * weights["health_score"]
    procedure = procedure_risk / 100 * weights["procedure_risk"]
    affordability = (100 - affordability_score) / 100 * weights["affordability"]
    provider = (100 - provider_score) / 100 * weights["provider_performance"]
    behavioral = (100 - behavioral_score) / 100 * weights["behavioral_signals"]

    pd_raw = health + procedure + affordability + provider + behavioral
    pd_score = _clamp(pd_raw * config.pd_calibration_factor, config.pd_floor, config.pd_cap)

    return PDResult(
        score=_round4(pd_score),
        band=pd_band(pd_score),
        components=PDComponents(
            health_score=_round4(health),
            procedure_risk=_round4(procedure),
            affordability=_round4(affordability),
            provider=_round4(provider),
            behavioral=_round4(behavioral),
        ),
    )


def medical_aid_tier(scheme: Optional[str], option: Optional[str]) -> str:
    if not scheme:
        return "none"

    option_lower = (option or "").lower()
    if "comprehensive" in option_lower or "executive" in option_lower:
        return "comprehensive"
    if "classic" in option_lower or "priority" in option_lower:
        return "classic"
    if "essential" in option_lower or "smart" in option_lower:
        return "essential"
    return "basic"


def calculate_lgd(
    has_medical_aid: bool = False,
    aid_tier: str = "none",
    procedure_necessity: float = 0.5,
    provider_network: bool = False,
    family_support_indicator: float = 0.5,
    config: RiskModelConfig = RiskModelConfig(),
) -> LGDResult:
    """
    Loss Given Default.

    Recovery channels: the medical aid scheme, family support (stronger for
    necessary procedures), retained procedure value and provider-assisted
    collections. Clamped to [lgd_floor, lgd_cap].
    """
    weights = config.lgd_weights

    if not has_medical_aid:
        medical_aid_recovery = 0.8
    elif aid_tier == "comprehensive":
        medical_aid_recovery = 0.2
    elif aid_tier == "classic":
        medical_aid_recovery = 0.35
    else:
        medical_aid_recovery = 0.5

    family_support = 1 - (family_support_indicator * procedure_necessity)
    procedure_value = 1 - procedure_necessity
    provider_recovery = 0.3 if provider_network else 0.6

    medical_aid_component = medical_aid_recovery * weights["medical_aid_recovery"]
    family_component = family_support * weights["family_support"]
    procedure_component = procedure_value * weights["procedure_value"]
    provider_component = provider_recovery * weights["provider_recovery"]

    lgd_raw = medical_aid_component + family_component + procedure_component + provider_component
    lgd_score = _clamp(lgd_raw, config.lgd_floor, config.lgd_cap)

    return LGDResult(
        score=_round4(lgd_score),
        band=lgd_band(lgd_score),
        components=LGDComponents(
            medical_aid_recovery=_round4(medical_aid_component),
            family_support=_round4(family_component),
            procedure_value=_round4(procedure_component),
            provider_recovery=_round4(provider_component),
        ),
    )


def make_risk_decision(expected_loss_rate: float) -> RiskDecision:
    """
    Map expected loss rate to a decision. Upper bounds are inclusive.

    - <= 1.0%: approve (0.95)
    - <= 2.5%: approve (0.85)
    - <= 5.0%: review (0.70)
    - above:   decline (0.90)
    """
    if expected_loss_rate <= 0.01:
        return RiskDecision(RiskDecisionOutcome.APPROVE, "Low expected loss rate", 0.95)
    if expected_loss_rate <= 0.025:
        return RiskDecision(
            RiskDecisionOutcome.APPROVE, "Acceptable expected loss within risk appetite", 0.85
        )
    if expected_loss_rate <= 0.05:
        return RiskDecision(
            RiskDecisionOutcome.REVIEW, "Elevated risk - manual review recommended", 0.70
        )
    return RiskDecision(RiskDecisionOutcome.DECLINE, "Expected loss exceeds risk appetite", 0.90)


def calculate_risk_adjusted_pricing(
    pd_score: float,
    lgd_score: float,
    config: RiskModelConfig = RiskModelConfig(),
) -> Pricing:
    """Risk-free rate + covered expected loss + capital charge + target return, capped"""
    expected_loss_rate = pd_score * lgd_score
    rate = (
        config.risk_free_rate
        + expected_loss_rate * config.expected_loss_coverage
        + config.capital_charge
        + config.target_return
    )
    final_rate = _round4(_clamp(rate, config.min_rate, config.max_rate))

    return Pricing(
        base_rate=config.base_rate,
        risk_premium=_round4(final_rate - config.base_rate),
        final_rate=final_rate,
    )


def get_recommended_term(pd_score: float, loan_amount: float) -> int:
    """Lower risk earns longer terms; larger amounts need them"""
    if pd_score <= 0.03:
        return 6 if loan_amount > 10000 else 3
    if pd_score <= 0.05:
        return 4 if loan_amount > 15000 else 3
    return 3


def calculate_max_approved_amount(affordability_max: float, pd_score: float) -> float:
    if pd_score <= 0.03:
        multiplier = 1.0
    elif pd_score <= 0.05:
        multiplier = 0.85
    elif pd_score <= 0.08:
        multiplier = 0.70
    else:
        multiplier = 0.50

    return float(_round_half_up(affordability_max * multiplier))


def calculate_model_confidence(
    components: HealthScoreComponents,
    procedure: ProcedureRiskProfile,
) -> float:
    """More populated data sources mean more confidence, capped at 0.95"""
    confidence = 0.5

    if components.medical_aid:
        confidence += 0.1
    if components.medication_adherence:
        confidence += 0.1
    if components.provider_payment:
        confidence += 0.15
    if procedure.icd10_code:
        confidence += 0.15

    return _round4(min(0.95, confidence))


def marketplace_risk_score(pd_score: float, config: RiskModelConfig = RiskModelConfig()) -> int:
    """Express PD as a 0-100 score where higher is safer, for lender matching"""
    return _round_half_up(100 * (1 - pd_score / config.pd_cap))
