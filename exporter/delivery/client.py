"""
HTTP client for the analytics ingestion endpoint.

This module provides delivery with:
- Single-event and batch endpoints
- A shared circuit breaker so a degraded endpoint is not hammered
- Independent connect / socket / pool-acquisition timeouts
- Classification of every response into a DeliveryOutcome (never raises
  for transport problems)
"""

from typing import Any, List, Optional
from core.config import Settings
from core.exceptions import CircuitOpenError
from core.sanitizer import sanitize_json, sanitize_url
from exporter.delivery.circuit_breaker import CircuitBreaker
from schemas.delivery import DeliveryOutcome
from schemas.envelope import Envelope
from pydantic import ValidationError
import httpx
import json
import logging

logger = logging.getLogger(__name__)

SINGLE_ENDPOINT = "/v2/event/json"
BATCH_ENDPOINT = "/v2/event/list"
APP_KEY_HEADER = "X-MCS-AppKey"
CONTENT_TYPE = "application/json"


def build_timeout(settings: Settings) -> httpx.Timeout:
    """Map the three configured timeouts onto httpx's timeout phases"""
    socket_timeout = settings.HTTP_SOCKET_TIMEOUT_MS / 1000
    return httpx.Timeout(
        connect=settings.HTTP_CONNECT_TIMEOUT_MS / 1000,
        read=socket_timeout,
        write=socket_timeout,
        pool=settings.HTTP_CONNECTION_REQUEST_TIMEOUT_MS / 1000,
    )


class DeliveryClient:
    """
    Send envelopes to the analytics endpoint.

    One instance is shared by every table run; its circuit breaker is
    endpoint-scoped.

    Attributes:
        max_batch_size: Provider cap for one batch request; larger
            batches are truncated to the cap with a warning
    """

    def __init__(
        self,
        base_url: str,
        app_key: Optional[str],
        breaker: CircuitBreaker,
        timeout: Optional[httpx.Timeout] = None,
        max_batch_size: int = 50,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.breaker = breaker
        self.max_batch_size = max_batch_size

        headers = {"Content-Type": CONTENT_TYPE}
        if app_key:
            headers[APP_KEY_HEADER] = app_key

        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout or httpx.Timeout(30.0),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=50),
            transport=transport,
        )

        logger.info(f"Delivery client initialized for {sanitize_url(base_url)}")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        breaker: CircuitBreaker,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "DeliveryClient":
        return cls(
            base_url=settings.REPORT_API_BASE_URL,
            app_key=settings.REPORT_APP_KEY,
            breaker=breaker,
            timeout=build_timeout(settings),
            max_batch_size=settings.MAX_BATCH_SIZE,
            transport=transport,
        )

    async def send_single(self, envelope: Envelope) -> DeliveryOutcome:
        """POST one envelope object to the single-event endpoint"""
        return await self._post(SINGLE_ENDPOINT, envelope.to_wire())

    async def send_batch(self, envelopes: List[Envelope]) -> DeliveryOutcome:
        """
        POST an array of envelopes to the batch endpoint.

        An empty batch succeeds without a request. A batch above
        ``max_batch_size`` is truncated to exactly the cap.
        """
        if not envelopes:
            return DeliveryOutcome.succeeded(0)

        if len(envelopes) > self.max_batch_size:
            logger.warning(
                f"Batch size {len(envelopes)} exceeds maximum {self.max_batch_size}, truncating"
            )
            envelopes = envelopes[:self.max_batch_size]

        return await self._post(BATCH_ENDPOINT, [envelope.to_wire() for envelope in envelopes])

    async def _post(self, endpoint: str, body: Any) -> DeliveryOutcome:
        try:
            self.breaker.acquire()
        except CircuitOpenError as e:
            logger.warning(f"Request to {endpoint} rejected: {e.message}")
            return DeliveryOutcome.rejected(e.message)

        payload = json.dumps(body, ensure_ascii=False, separators=(",", ":"))
        logger.debug(f"POST {endpoint} body={sanitize_json(payload)}")

        try:
            response = await self._client.post(endpoint, content=payload.encode("utf-8"))
        except httpx.TimeoutException as e:
            self.breaker.record_failure()
            logger.error(f"Request to {endpoint} timed out: {type(e).__name__}")
            return DeliveryOutcome.failed(0, f"Timeout ({type(e).__name__}): {e}")
        except httpx.HTTPError as e:
            self.breaker.record_failure()
            logger.error(f"HTTP request to {endpoint} failed: {e}")
            return DeliveryOutcome.failed(0, f"Connection error: {e}")
        except BaseException:
            # Cancelled mid-request: no outcome to record, free a half-open trial
            self.breaker.release_trial()
            raise

        outcome = self._classify(response)
        if outcome.success:
            self.breaker.record_success()
        else:
            self.breaker.record_failure()
        return outcome

    def _classify(self, response: httpx.Response) -> DeliveryOutcome:
        body = response.text
        logger.debug(f"Response status: {response.status_code}, body: {body}")

        if response.status_code != 200:
            logger.error(f"API request failed: status={response.status_code}")
            return DeliveryOutcome.failed(
                response.status_code,
                f"HTTP {response.status_code}: {body}",
                raw_response=body,
            )

        try:
            data = response.json()
            counts = {key: data.get(key) for key in ("sc", "ec", "e", "message")}
            outcome = DeliveryOutcome.model_validate(
                {**counts, "success": True, "http_status": 200, "raw_response": body}
            )
        except (ValueError, AttributeError, ValidationError):
            logger.warning("Failed to parse response body, treating as success")
            return DeliveryOutcome(success=True, http_status=200, raw_response=body)

        if outcome.is_partial:
            logger.warning(f"Partial success from endpoint: {outcome.describe()} message={outcome.message}")
        return outcome

    async def aclose(self) -> None:
        await self._client.aclose()
        logger.info("Delivery client closed")

    async def __aenter__(self) -> "DeliveryClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
