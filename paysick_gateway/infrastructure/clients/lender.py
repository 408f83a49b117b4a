"""Lender webhook client with signed payloads and exponential backoff retry logic"""

import asyncio
import json
import logging
from typing import Dict, List

import httpx

from paysick_gateway.config import settings
from paysick_gateway.domain.exceptions import LenderNotificationError
from paysick_gateway.domain.models import LenderNotification
from paysick_gateway.infrastructure.observability.metrics import webhook_failure_counter, webhook_latency_histogram
from paysick_gateway.utils.signing import SIGNATURE_HEADER, sign_payload

logger = logging.getLogger(__name__)


class LenderNotifier:
    """Client for pushing loan packages to lender webhooks"""

    def __init__(
        self,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_base: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout or settings.http_timeout_seconds
        self.max_retries = max_retries or settings.webhook_max_retries
        self.backoff_base = settings.webhook_backoff_base if backoff_base is None else backoff_base
        self.transport = transport

    async def send_loan_available(self, notification: LenderNotification) -> None:
        """
        POST a `loan.available` package to one lender with retry logic.

        The body is serialized once and the signature covers exactly those
        bytes, so the lender can verify what it receives.

        Retry strategy:
        - Exponential backoff: base, 2*base, 4*base ...
        - Retries on non-2xx responses and network failures
        - Tracks latency histogram and per-lender failure counter
        - An invalid webhook URL fails at once

        Raises:
            LenderNotificationError: After the final failed attempt
        """
        body = json.dumps(notification.payload, default=str).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if notification.api_key:
            headers[SIGNATURE_HEADER] = sign_payload(body, notification.api_key)

        attempt = 0
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            while attempt < self.max_retries:
                try:
                    with webhook_latency_histogram.time():
                        response = await client.post(notification.webhook_url, content=body, headers=headers)
                        response.raise_for_status()
                        return  # Success

                except httpx.InvalidURL as e:
                    # A bad stored URL never heals on retry
                    webhook_failure_counter.labels(lender=notification.lender_code).inc()
                    raise LenderNotificationError(f"Lender {notification.lender_code} webhook URL is invalid") from e

                except (httpx.HTTPStatusError, httpx.RequestError) as e:
                    attempt += 1
                    webhook_failure_counter.labels(lender=notification.lender_code).inc()

                    if attempt >= self.max_retries:
                        raise LenderNotificationError(
                            f"Lender {notification.lender_code} webhook failed after {attempt} attempts"
                        ) from e

                    backoff = self.backoff_base * (2 ** (attempt - 1))
                    await asyncio.sleep(backoff)

    async def _deliver(self, notification: LenderNotification) -> bool:
        try:
            await self.send_loan_available(notification)
            return True
        except LenderNotificationError as e:
            logger.warning(
                "Lender notification failed",
                extra={"lender_code": notification.lender_code, "error": str(e)},
            )
            return False
        except Exception:
            webhook_failure_counter.labels(lender=notification.lender_code).inc()
            logger.exception("Lender notification crashed", extra={"lender_code": notification.lender_code})
            return False

    async def dispatch_all(self, notifications: List[LenderNotification]) -> Dict[str, bool]:
        """Notify all lenders concurrently; one lender failing never affects the others"""
        if not notifications:
            return {}
        results = await asyncio.gather(*(self._deliver(n) for n in notifications))
        return {n.lender_code: ok for n, ok in zip(notifications, results)}

