"""
Paystack API client.

Wraps the two endpoints the reconciliation engine needs:
- ``POST /transaction/initialize`` to open a hosted checkout
- ``GET /transaction/verify/{reference}`` to read a charge's final state

Every call authenticates with the calling institution's secret key and is
bounded by a timeout. Calls are never retried here; the caller decides.
"""
import json
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
import structlog

from payment_reconciliation.config import get_settings
from payment_reconciliation.core.amounts import from_minor
from payment_reconciliation.core.errors import GatewayError, GatewayErrorType
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CHECKOUT_CHANNELS: List[str] = ["card", "bank", "ussd", "mobile_money", "bank_transfer"]

# Masked instrument fields kept on the ledger row
AUTHORIZATION_FIELDS = (
    "card_type",
    "last4",
    "exp_month",
    "exp_year",
    "brand",
    "bank",
    "country_code",
    "account_name",
)


@dataclass(frozen=True)
class InitializedTransaction:
    authorization_url: str
    access_code: str
    reference: str


@dataclass(frozen=True)
class GatewayTransaction:
    """Normalized view of a Paystack transaction object."""

    status: str
    reference: str
    amount_minor: int
    currency: Optional[str] = None
    gateway_reference: Optional[str] = None
    channel: Optional[str] = None
    authorization_code: Optional[str] = None
    authorization: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    gateway_response: Optional[str] = None
    paid_at: Optional[str] = None
    customer_email: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @property
    def amount(self) -> Decimal:
        return from_minor(self.amount_minor)


def _decode_metadata(raw: Any) -> Dict[str, Any]:
    # Paystack echoes metadata back as a JSON string when it was sent as one
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return {}
    return raw if isinstance(raw, dict) else {}


def parse_transaction(data: Dict[str, Any]) -> GatewayTransaction:
    """
    Parse a transaction object from a verify response or a webhook payload.

    Args:
        data: The ``data`` object of the Paystack response or event

    Returns:
        GatewayTransaction: Normalized transaction

    Raises:
        GatewayError: If required fields are missing or mistyped
    """
    if not isinstance(data, dict):
        raise GatewayError("Transaction payload is not an object", GatewayErrorType.MALFORMED)

    reference = data.get("reference")
    status = data.get("status")
    amount = data.get("amount")
    if not isinstance(reference, str) or not reference or not isinstance(status, str):
        raise GatewayError(
            "Transaction payload is missing reference or status", GatewayErrorType.MALFORMED
        )
    if isinstance(amount, bool):
        amount = None
    try:
        amount_minor = int(amount)
    except (TypeError, ValueError):
        raise GatewayError(
            f"Transaction {reference} has no valid amount", GatewayErrorType.MALFORMED
        )

    authorization = data.get("authorization") or {}
    if not isinstance(authorization, dict):
        authorization = {}
    customer = data.get("customer") or {}

    return GatewayTransaction(
        status=status,
        reference=reference,
        amount_minor=amount_minor,
        currency=data.get("currency"),
        gateway_reference=str(data["id"]) if data.get("id") is not None else None,
        channel=data.get("channel"),
        authorization_code=authorization.get("authorization_code"),
        authorization={
            key: authorization[key]
            for key in AUTHORIZATION_FIELDS
            if authorization.get(key) is not None
        },
        metadata=_decode_metadata(data.get("metadata")),
        gateway_response=data.get("gateway_response"),
        paid_at=data.get("paid_at") or data.get("paidAt"),
        customer_email=customer.get("email") if isinstance(customer, dict) else None,
    )


class PaystackClient:
    """
    Async Paystack client.

    Features:
    - Injectable httpx.AsyncClient for tests and connection reuse
    - Per-call bearer auth so one client serves every institution
    - Error classification into GatewayErrorType
    - Prometheus latency and error metrics
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize Paystack client.

        Args:
            http_client: Optional shared HTTP client (one is created if omitted)
            base_url: API base URL (defaults to settings)
            timeout: Per-call timeout in seconds (defaults to settings)
        """
        self.settings = get_settings()
        self.base_url = (base_url or self.settings.paystack_base_url).rstrip("/")
        self.timeout = timeout or self.settings.paystack_timeout_seconds
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self.timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def initialize_transaction(
        self,
        secret_key: str,
        email: str,
        amount_minor: int,
        reference: str,
        metadata: Dict[str, Any],
        split_code: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> InitializedTransaction:
        """
        Open a hosted checkout for a charge.

        Args:
            secret_key: Institution secret key
            email: Payer email
            amount_minor: Amount in minor units (kobo)
            reference: Our payment reference
            metadata: Context echoed back on verify and webhook
            split_code: Optional subaccount split
            callback_url: Optional redirect after checkout

        Returns:
            InitializedTransaction: Redirect URL and popup access code

        Raises:
            GatewayError: If the gateway rejects or cannot be reached
        """
        payload: Dict[str, Any] = {
            "email": email,
            "amount": amount_minor,
            "reference": reference,
            "metadata": metadata,
            "channels": CHECKOUT_CHANNELS,
        }
        callback_url = callback_url or self.settings.paystack_callback_url
        if callback_url:
            payload["callback_url"] = callback_url
        if split_code and split_code.strip():
            payload["split_code"] = split_code.strip()

        logger.info(
            "initializing_paystack_transaction",
            reference=reference,
            amount_minor=amount_minor,
            has_split="split_code" in payload,
        )

        data = await self._request(
            "initialize", "POST", "/transaction/initialize", secret_key, payload
        )

        authorization_url = data.get("authorization_url")
        access_code = data.get("access_code")
        if not authorization_url or not access_code:
            metrics.record_gateway_error(GatewayErrorType.MALFORMED.value)
            raise GatewayError(
                "Initialize response is missing authorization_url or access_code",
                GatewayErrorType.MALFORMED,
            )

        return InitializedTransaction(
            authorization_url=authorization_url,
            access_code=access_code,
            reference=data.get("reference") or reference,
        )

    async def verify_transaction(self, secret_key: str, reference: str) -> GatewayTransaction:
        """
        Read the authoritative state of a transaction.

        Args:
            secret_key: Institution secret key
            reference: Our reference (or the gateway transaction reference)

        Returns:
            GatewayTransaction: Parsed transaction

        Raises:
            GatewayError: On timeout, transport failure, rejection or malformed data
        """
        data = await self._request(
            "verify", "GET", f"/transaction/verify/{quote(reference, safe='')}", secret_key
        )
        try:
            transaction = parse_transaction(data)
        except GatewayError as e:
            metrics.record_gateway_error(e.error_type.value)
            raise

        logger.info(
            "paystack_transaction_verified",
            reference=reference,
            gateway_status=transaction.status,
            amount_minor=transaction.amount_minor,
        )
        return transaction

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        secret_key: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send one request and unwrap Paystack's ``{status, message, data}`` envelope."""
        start_time = time.time()
        try:
            response = await self._client.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers={
                    "Authorization": f"Bearer {secret_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            self._record_failure(operation, start_time, GatewayErrorType.TIMEOUT, e)
            raise GatewayError(
                f"Paystack {operation} timed out after {self.timeout}s",
                GatewayErrorType.TIMEOUT,
                original_error=e,
            )
        except httpx.HTTPError as e:
            self._record_failure(operation, start_time, GatewayErrorType.NETWORK, e)
            raise GatewayError(
                f"Paystack {operation} request failed: {str(e)}",
                GatewayErrorType.NETWORK,
                original_error=e,
            )

        try:
            body = response.json()
        except ValueError:
            body = None

        message = body.get("message") if isinstance(body, dict) else None

        if not response.is_success:
            self._record_failure(operation, start_time, GatewayErrorType.UPSTREAM)
            raise GatewayError(
                message or f"Paystack {operation} returned HTTP {response.status_code}",
                GatewayErrorType.UPSTREAM,
                upstream_status=response.status_code,
            )

        if not isinstance(body, dict):
            self._record_failure(operation, start_time, GatewayErrorType.MALFORMED)
            raise GatewayError(
                f"Paystack {operation} returned a non-JSON body",
                GatewayErrorType.MALFORMED,
                upstream_status=response.status_code,
            )

        if body.get("status") is not True:
            self._record_failure(operation, start_time, GatewayErrorType.UPSTREAM)
            raise GatewayError(
                message or f"Paystack {operation} was rejected",
                GatewayErrorType.UPSTREAM,
                upstream_status=response.status_code,
            )

        data = body.get("data")
        if not isinstance(data, dict):
            self._record_failure(operation, start_time, GatewayErrorType.MALFORMED)
            raise GatewayError(
                f"Paystack {operation} response has no data object",
                GatewayErrorType.MALFORMED,
                upstream_status=response.status_code,
            )

        metrics.record_gateway_request(operation, "success", time.time() - start_time)
        return data

    def _record_failure(
        self,
        operation: str,
        start_time: float,
        error_type: GatewayErrorType,
        error: Optional[Exception] = None,
    ) -> None:
        metrics.record_gateway_request(operation, "error", time.time() - start_time)
        metrics.record_gateway_error(error_type.value)
        logger.error(
            "paystack_request_failed",
            operation=operation,
            error_type=error_type.value,
            error=str(error) if error else None,
        )
