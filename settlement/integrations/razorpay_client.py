"""
Razorpay REST client with structured errors and a circuit breaker.

Implements:
- Order, plan and subscription creation (never retried here: a retried
  create could open a second remote resource)
- Subscription reads with exponential backoff for transient errors
- One ``GatewayError`` shape for every remote failure
"""
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from settlement.config import Settings, get_settings
from settlement.exceptions import ValidationError
from settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class GatewayError(Exception):
    """
    A failed gateway call.

    Attributes:
        code: Gateway error code (e.g. ``BAD_REQUEST_ERROR``) or a local
            code: ``TIMEOUT``, ``NETWORK_ERROR``, ``CIRCUIT_OPEN``, ``HTTP_<status>``
        message: Remote description, verbatim, for operator diagnosis
        raw: Decoded remote payload (or text) as received
        status_code: HTTP status, if a response was received
        retryable: Whether a fresh user action may reasonably succeed
    """

    def __init__(
        self,
        code: str,
        message: str,
        raw: Any = None,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.raw = raw
        self.status_code = status_code
        self.retryable = retryable

    @classmethod
    def from_response(cls, response: httpx.Response) -> "GatewayError":
        """Build an error from a non-2xx gateway response."""
        status_code = response.status_code
        try:
            raw: Any = response.json()
        except ValueError:
            raw = response.text

        code = f"HTTP_{status_code}"
        message = response.reason_phrase or "Gateway request failed"
        if isinstance(raw, dict) and isinstance(raw.get("error"), dict):
            error = raw["error"]
            code = error.get("code") or code
            message = error.get("description") or error.get("reason") or message
        elif isinstance(raw, str) and raw.strip():
            message = raw.strip()

        return cls(
            code=code,
            message=message,
            raw=raw,
            status_code=status_code,
            retryable=status_code >= 500 or status_code == 429,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "raw": self.raw}


@dataclass(frozen=True)
class OrderRef:
    """A gateway order the checkout is opened against."""

    id: str
    amount: int
    currency: str
    receipt: Optional[str] = None
    status: str = "created"


@dataclass(frozen=True)
class PlanRef:
    """A gateway recurring-billing plan."""

    id: str
    period: str = "monthly"
    interval: int = 1


@dataclass(frozen=True)
class SubscriptionRef:
    """A gateway subscription as last reported."""

    id: str
    status: str
    plan_id: Optional[str] = None
    ended_at: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Stops calling the gateway for ``timeout`` seconds after
    ``failure_threshold`` consecutive transient failures.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[[], Awaitable[Any]]) -> Any:
        """
        Execute ``func`` with circuit breaker protection.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayError(
                    code="CIRCUIT_OPEN",
                    message="Gateway circuit breaker is open",
                    retryable=True,
                )

        try:
            result = await func()
        except GatewayError as e:
            if e.retryable:
                self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold or self.state == "half_open":
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.retryable


class RazorpayClient:
    """
    Gateway client for orders, plans and subscriptions.

    Credentials are checked on every call, before any network I/O, so a
    missing key surfaces as ``ConfigurationError`` on first use rather
    than at import or startup.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

    @property
    def key_id(self) -> str:
        key_id, _ = self.settings.require_gateway_credentials()
        return key_id

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.settings.gateway_base_url,
                timeout=self.settings.gateway_timeout_seconds,
            )
        return self._http_client

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Issue one authenticated gateway call.

        Raises:
            ConfigurationError: If credentials are missing (no request is sent)
            GatewayError: On timeout, transport failure or non-2xx response
        """
        key_id, key_secret = self.settings.require_gateway_credentials()
        client = self._client()
        start_time = time.time()

        async def _send() -> httpx.Response:
            try:
                response = await client.request(
                    method, path, json=payload, auth=(key_id, key_secret)
                )
            except httpx.TimeoutException as e:
                raise GatewayError(
                    code="TIMEOUT",
                    message=f"Gateway request timed out: {e}",
                    retryable=True,
                ) from e
            except httpx.HTTPError as e:
                raise GatewayError(
                    code="NETWORK_ERROR",
                    message=f"Gateway request failed: {e}",
                    retryable=True,
                ) from e
            if response.status_code >= 500:
                raise GatewayError.from_response(response)
            return response

        try:
            response = await self.circuit_breaker.call(_send)
            if response.is_error:
                raise GatewayError.from_response(response)
            try:
                data = response.json()
            except ValueError as e:
                raise GatewayError(
                    code="INVALID_RESPONSE",
                    message="Gateway returned a non-JSON body",
                    raw=response.text,
                    status_code=response.status_code,
                ) from e
        except GatewayError as e:
            duration = time.time() - start_time
            metrics.record_gateway_call(operation, "error", duration)
            metrics.record_gateway_error(operation, e.code)
            logger.error(
                "gateway_api_error",
                operation=operation,
                error_code=e.code,
                error_message=e.message,
                status_code=e.status_code,
                retryable=e.retryable,
            )
            raise

        metrics.record_gateway_call(operation, "success", time.time() - start_time)
        return data

    def _normalize_receipt(self, receipt: str) -> str:
        if not receipt or not receipt.strip():
            raise ValidationError("Receipt is required")
        receipt = receipt.strip()
        limit = self.settings.gateway_receipt_max_length
        if len(receipt) > limit:
            logger.info("receipt_truncated", receipt=receipt, limit=limit)
            receipt = receipt[:limit]
        return receipt

    @staticmethod
    def _validate_amount(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(
                "Amount must be a positive integer in the smallest currency unit"
            )

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> OrderRef:
        """
        Create a gateway order.

        Args:
            amount: Amount in the smallest currency unit (paise)
            currency: Currency code (e.g. 'INR')
            receipt: Merchant receipt label, truncated to the gateway limit
            notes: Optional key/value notes stored on the order

        Returns:
            OrderRef: Created order

        Raises:
            ValidationError: If amount or receipt are malformed
            ConfigurationError: If credentials are missing
            GatewayError: If the gateway rejects or cannot be reached
        """
        self._validate_amount(amount)
        receipt = self._normalize_receipt(receipt)
        logger.info(
            "creating_gateway_order", amount=amount, currency=currency, receipt=receipt
        )

        data = await self._request(
            "create_order",
            "POST",
            "/orders",
            {
                "amount": amount,
                "currency": currency.upper(),
                "receipt": receipt,
                "payment_capture": 1,
                "notes": notes or {},
            },
        )

        order = OrderRef(
            id=data["id"],
            amount=int(data.get("amount", amount)),
            currency=data.get("currency", currency.upper()),
            receipt=data.get("receipt", receipt),
            status=data.get("status", "created"),
        )
        logger.info("gateway_order_created", order_id=order.id, amount=order.amount)
        return order

    async def create_plan(
        self,
        name: str,
        amount: int,
        currency: str,
        description: str,
        period: Optional[str] = None,
        interval: int = 1,
    ) -> PlanRef:
        """
        Create a recurring-billing plan.

        Raises:
            ValidationError: If amount is malformed
            ConfigurationError: If credentials are missing
            GatewayError: If the gateway rejects or cannot be reached
        """
        self._validate_amount(amount)
        period = period or self.settings.subscription_period
        logger.info("creating_gateway_plan", name=name, amount=amount, period=period)

        data = await self._request(
            "create_plan",
            "POST",
            "/plans",
            {
                "period": period,
                "interval": interval,
                "item": {
                    "name": name,
                    "amount": amount,
                    "currency": currency.upper(),
                    "description": description,
                },
            },
        )

        plan = PlanRef(
            id=data["id"],
            period=data.get("period", period),
            interval=int(data.get("interval", interval)),
        )
        logger.info("gateway_plan_created", plan_id=plan.id)
        return plan

    async def create_subscription(
        self,
        plan_id: str,
        total_count: int,
        notes: Optional[Dict[str, str]] = None,
    ) -> SubscriptionRef:
        """
        Create a subscription against a plan.

        Raises:
            ConfigurationError: If credentials are missing
            GatewayError: If the gateway rejects or cannot be reached
        """
        logger.info("creating_gateway_subscription", plan_id=plan_id, total_count=total_count)

        data = await self._request(
            "create_subscription",
            "POST",
            "/subscriptions",
            {
                "plan_id": plan_id,
                "total_count": total_count,
                "quantity": 1,
                "customer_notify": 1,
                "notes": notes or {},
            },
        )

        subscription = self._subscription_from(data)
        logger.info(
            "gateway_subscription_created",
            subscription_id=subscription.id,
            status=subscription.status,
        )
        return subscription

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def fetch_subscription(self, subscription_id: str) -> SubscriptionRef:
        """
        Read a subscription's current state.

        Read-only, so transient failures are retried with backoff.
        """
        data = await self._request(
            "fetch_subscription", "GET", f"/subscriptions/{subscription_id}"
        )
        return self._subscription_from(data)

    @staticmethod
    def _subscription_from(data: Dict[str, Any]) -> SubscriptionRef:
        return SubscriptionRef(
            id=data["id"],
            status=data.get("status", "created"),
            plan_id=data.get("plan_id"),
            ended_at=data.get("ended_at"),
            raw=data,
        )

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None
