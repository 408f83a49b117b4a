"""Structured JSON logging for production observability"""

import logging
import sys
from typing import Any, Dict
from pythonjsonlogger.json import JsonFormatter

from paysick_gateway.config import settings
from paysick_gateway.domain.models import MarketplaceEvent
from paysick_gateway.utils.date_utils import utcnow


class CustomJsonFormatter(JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = utcnow().isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_assessment(
    application_id: str,
    user_id: str,
    decision: str,
    pd_score: float,
    expected_loss_rate: float,
    duration_ms: float,
) -> None:
    """Log structured risk assessment outcome for model monitoring"""
    logging.info(
        "Risk assessment completed",
        extra={
            "application_id": application_id,
            "user_id": user_id,
            "step": "assessment_complete",
            "outcome": decision,
            "pd": pd_score,
            "expected_loss_rate": expected_loss_rate,
            "duration_ms": duration_ms,
        },
    )


def log_submission(application_id: str, user_id: str, risk_tier: str, eligible_lenders: int) -> None:
    logging.info(
        "Application submitted to marketplace",
        extra={
            "application_id": application_id,
            "user_id": user_id,
            "step": "marketplace_submit",
            "risk_tier": risk_tier,
            "eligible_lenders": eligible_lenders,
        },
    )


def log_offer_accepted(application_id: str, offer_id: str, loan_id: str, user_id: str) -> None:
    logging.info(
        "Offer accepted",
        extra={
            "application_id": application_id,
            "offer_id": offer_id,
            "loan_id": loan_id,
            "user_id": user_id,
            "step": "offer_accepted",
        },
    )


def log_event(event: MarketplaceEvent) -> None:
    """Event listener that writes every domain event to the structured log"""
    logging.info(
        f"Event {event.name}",
        extra={"event": event.name, "occurred_at": event.occurred_at.isoformat(), **event.payload},
    )
