"""HTTP delivery of payloads to tenant callback URLs."""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from courier.config import settings
from courier.logging_config import get_logger

logger = get_logger("webhook_poster")


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    REJECTED = "rejected"
    RETRYABLE_FAILURE = "retryable_failure"


@dataclass
class DeliveryResult:
    status: DeliveryStatus
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


def classify_status_code(status_code: int) -> DeliveryStatus:
    if 200 <= status_code < 300:
        return DeliveryStatus.DELIVERED
    if 400 <= status_code < 500:
        return DeliveryStatus.REJECTED
    return DeliveryStatus.RETRYABLE_FAILURE


class WebhookPoster:
    """POST JSON to a callback with bounded retries.

    2xx is delivered, 4xx is rejected and never retried, anything else
    (5xx, network error, timeout) is retried with exponential backoff and
    reported as a retryable failure once attempts run out.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        sleep_func: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.webhook_timeout_seconds
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.webhook_max_attempts)
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.webhook_backoff_seconds
        self._sleep = sleep_func
        self._transport = transport

    def backoff_for(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))

    async def post(self, url: str, payload: dict[str, Any]) -> DeliveryResult:
        last_error: str | None = None
        last_status_code: int | None = None

        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    response = await client.post(url, json=payload)
                except httpx.HTTPError as exc:
                    last_error = f"{type(exc).__name__}: {exc}"
                    last_status_code = None
                    logger.warning(
                        "Webhook attempt failed",
                        extra={"context": {"url": url, "attempt": attempt, "max_attempts": self.max_attempts, "error": last_error}},
                    )
                else:
                    status = classify_status_code(response.status_code)
                    if status == DeliveryStatus.DELIVERED:
                        logger.info(
                            "Webhook delivered",
                            extra={"context": {"url": url, "attempt": attempt, "status_code": response.status_code}},
                        )
                        return DeliveryResult(status=status, attempts=attempt, status_code=response.status_code)

                    if status == DeliveryStatus.REJECTED:
                        body_preview = response.text[:200]
                        logger.error(
                            "Webhook rejected payload",
                            extra={"context": {"url": url, "status_code": response.status_code, "body": body_preview}},
                        )
                        return DeliveryResult(
                            status=status,
                            attempts=attempt,
                            status_code=response.status_code,
                            error=f"HTTP {response.status_code}: {body_preview}",
                        )

                    last_status_code = response.status_code
                    last_error = f"HTTP {response.status_code}"
                    logger.warning(
                        "Webhook server error, retrying",
                        extra={"context": {"url": url, "attempt": attempt, "max_attempts": self.max_attempts, "status_code": response.status_code}},
                    )

                if attempt < self.max_attempts:
                    await self._sleep(self.backoff_for(attempt))

        logger.error(
            "Webhook delivery failed after retries",
            extra={"context": {"url": url, "attempts": self.max_attempts, "error": last_error}},
        )
        return DeliveryResult(
            status=DeliveryStatus.RETRYABLE_FAILURE,
            attempts=self.max_attempts,
            status_code=last_status_code,
            error=last_error,
        )
