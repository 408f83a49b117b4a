"""Explicit model parameters for the risk engine and the marketplace"""

from dataclasses import dataclass, field
from typing import Dict

from paysick_gateway.config import Settings


@dataclass(frozen=True)
class RiskModelConfig:
    """
    Weights and calibration of the healthcare PD/LGD model.

    Each weight table sums to 1.0. `pd_calibration_factor` maps the weighted
    PD sum (0-1) onto the target PD range before clamping.
    """

    model_version: str = "v1.0"

    pd_weights: Dict[str, float] = field(default_factory=lambda: {
        "health_score": 0.25,
        "procedure_risk": 0.20,
        "affordability": 0.25,
        "provider_performance": 0.15,
        "behavioral_signals": 0.15,
    })
    lgd_weights: Dict[str, float] = field(default_factory=lambda: {
        "medical_aid_recovery": 0.30,
        "family_support": 0.20,
        "procedure_value": 0.25,
        "provider_recovery": 0.25,
    })
    health_weights: Dict[str, float] = field(default_factory=lambda: {
        "medical_aid": 0.25,
        "medication_adherence": 0.15,
        "provider_payment": 0.30,
        "procedure_outcome": 0.15,
        "healthcare_utilization": 0.15,
    })

    pd_calibration_factor: float = 0.15
    pd_floor: float = 0.005
    pd_cap: float = 0.15
    lgd_floor: float = 0.20
    lgd_cap: float = 0.70

    # Pricing
    base_rate: float = 0.18
    risk_free_rate: float = 0.08
    expected_loss_coverage: float = 2.0
    capital_charge: float = 0.02
    target_return: float = 0.03
    min_rate: float = 0.15
    max_rate: float = 0.28  # NCA cap

    health_score_max_age_days: int = 30

    @classmethod
    def from_settings(cls, settings: Settings) -> "RiskModelConfig":
        return cls(
            model_version=settings.model_version,
            pd_calibration_factor=settings.pd_calibration_factor,
        )


@dataclass(frozen=True)
class MarketplaceConfig:
    """Auction windows, fees and fallback pricing"""

    offers_window_hours: int = 2
    offer_expiry_hours: int = 24
    origination_fee_rate: float = 0.025
    bridge_base_rate: float = 0.18
    default_risk_score: float = 50
    default_affordability_score: float = 60
    tier_premiums: Dict[str, float] = field(default_factory=lambda: {
        "LOW": 0.02,
        "MEDIUM": 0.05,
        "HIGH": 0.10,
    })
    callback_url: str = "https://api.paysick.co.za/v1/marketplace/webhooks/offer-response"

    @classmethod
    def from_settings(cls, settings: Settings) -> "MarketplaceConfig":
        return cls(
            offers_window_hours=settings.offers_window_hours,
            offer_expiry_hours=settings.offer_expiry_hours,
            origination_fee_rate=settings.origination_fee_rate,
            callback_url=f"{settings.api_base_url.rstrip('/')}/v1/marketplace/webhooks/offer-response",
        )
