import asyncio
import logging
from typing import Dict, Optional

import httpx

from webpush_service.push.types import DeliveryOutcome, DeliveryResult, Subscription

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_CONNECT_TIMEOUT = 10.0


def classify_status(status_code: int) -> DeliveryOutcome:
    """Map a push service response code to a delivery outcome."""
    if 200 <= status_code < 300:
        return DeliveryOutcome.DELIVERED
    if status_code in (404, 410):
        return DeliveryOutcome.SUBSCRIPTION_GONE
    if status_code == 413:
        return DeliveryOutcome.PAYLOAD_TOO_LARGE
    if status_code == 429:
        return DeliveryOutcome.RATE_LIMITED
    return DeliveryOutcome.TRANSIENT_FAILURE


def _retry_after(resp: httpx.Response) -> Optional[int]:
    raw = resp.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(int(raw), 0)
    except ValueError:
        # HTTP-date form is not worth parsing for a scheduling hint.
        return None


class DeliveryClient:
    """
    Performs one POST to one subscription endpoint.

    Never retries and never touches subscription state. Every transport
    outcome, including timeouts and connection errors, comes back as a
    DeliveryResult.
    """

    def __init__(
        self,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        user_agent: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.request_timeout = request_timeout
        self.connect_timeout = connect_timeout
        self.user_agent = user_agent
        self._client = http_client

    @property
    def timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.request_timeout, connect=self.connect_timeout)

    async def deliver(
        self,
        subscription: Subscription,
        authorization: str,
        body: bytes,
        headers: Dict[str, str],
    ) -> DeliveryResult:
        request_headers = dict(headers)
        request_headers["Authorization"] = authorization
        if self.user_agent:
            request_headers["User-Agent"] = self.user_agent

        try:
            # httpx timeouts are per phase; wait_for bounds the whole request.
            resp = await asyncio.wait_for(
                self._post(subscription.endpoint, body, request_headers),
                timeout=self.request_timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.debug(f"Push delivery to subscription {subscription.id} timed out")
            return DeliveryResult.transient(subscription.id, f"Timeout: {str(exc) or 'request timed out'}")
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.debug(f"Push delivery to subscription {subscription.id} failed: {exc}")
            return DeliveryResult.transient(subscription.id, str(exc) or exc.__class__.__name__)
        except (ValueError, TypeError) as exc:
            # Raised by httpx while building the request, e.g. a non-ASCII header value.
            logger.debug(f"Push request for subscription {subscription.id} could not be built: {exc}")
            return DeliveryResult.transient(subscription.id, f"Invalid request: {exc}")

        outcome = classify_status(resp.status_code)
        if outcome is DeliveryOutcome.DELIVERED:
            return DeliveryResult(
                outcome=outcome,
                subscription_id=subscription.id,
                status_code=resp.status_code,
            )
        return DeliveryResult(
            outcome=outcome,
            subscription_id=subscription.id,
            status_code=resp.status_code,
            message=f"HTTP {resp.status_code}: {resp.text[:200]}".rstrip(": "),
            retry_after=_retry_after(resp) if outcome is DeliveryOutcome.RATE_LIMITED else None,
        )

    async def _post(self, url: str, body: bytes, headers: Dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, content=body, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, content=body, headers=headers)
