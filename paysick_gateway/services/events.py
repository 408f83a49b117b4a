"""Event delivery to listeners registered on service construction"""

import logging
from typing import Any, Callable, Dict, Iterable

from paysick_gateway.domain.models import MarketplaceEvent
from paysick_gateway.utils.date_utils import utcnow

logger = logging.getLogger(__name__)

EventListener = Callable[[MarketplaceEvent], None]

APPLICATION_SUBMITTED = "application.submitted"
OFFER_CREATED = "offer.created"
OFFER_ACCEPTED = "offer.accepted"
ASSESSMENT_COMPLETED = "assessment.completed"


def emit(listeners: Iterable[EventListener], name: str, payload: Dict[str, Any]) -> None:
    """Deliver an event to every listener; a failing listener is logged and skipped"""
    event = MarketplaceEvent(name=name, payload=payload, occurred_at=utcnow())
    for listener in listeners:
        try:
            listener(event)
        except Exception:
            logger.exception("Event listener failed", extra={"event": name})
