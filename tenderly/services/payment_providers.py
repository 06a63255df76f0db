# tenderly/services/payment_providers.py
import hashlib
import hmac
import logging
import secrets
import time
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional, Dict, Any

import httpx

from ..config import get_settings, Settings
from ..errors import ExternalServiceError, InvalidSignatureError
from ..models import PaymentStatus
from ..schemas import OrderRequest, OrderResponse, VerificationResult, RefundResult

logger = logging.getLogger(__name__)


class PaymentProvider:
    """Uniform contract over payment backends."""

    name = "base"

    # Upper bound on how long verify_payment may take, used to size the confirmation lock
    max_verification_seconds = 0.0

    async def create_order(self, request: OrderRequest) -> OrderResponse:
        raise NotImplementedError

    async def verify_payment(self, payment_id: str, signature: Optional[str] = None, order_id: Optional[str] = None) -> VerificationResult:
        raise NotImplementedError

    async def refund_payment(self, payment_id: str, amount: Optional[int] = None, reason: Optional[str] = None) -> RefundResult:
        raise NotImplementedError

    async def get_payment_details(self, payment_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        raise NotImplementedError


def _suffix() -> str:
    return f"{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class MockPaymentProvider(PaymentProvider):
    """Always-successful provider for development and tests."""

    name = "mock"

    def __init__(self, base_url: str = "http://localhost:3000"):
        self.base_url = base_url.rstrip("/")

    async def create_order(self, request: OrderRequest) -> OrderResponse:
        order_id = f"mock_order_{_suffix()}"
        logger.info(f"Mock order {order_id} created for {request.amount} {request.currency}")
        return OrderResponse(
            order_id=order_id,
            amount=request.amount,
            currency=request.currency,
            status="created",
            payment_url=f"{self.base_url}/mock-payment/{order_id}",
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=request.expires_in_minutes),
            raw={"id": order_id, "receipt": request.receipt, "notes": request.notes},
        )

    async def verify_payment(self, payment_id: str, signature: Optional[str] = None, order_id: Optional[str] = None) -> VerificationResult:
        return VerificationResult(
            payment_id=payment_id,
            order_id=order_id,
            status=PaymentStatus.completed,
            method="card",
            raw={"id": payment_id, "status": "captured", "mock": True},
        )

    async def refund_payment(self, payment_id: str, amount: Optional[int] = None, reason: Optional[str] = None) -> RefundResult:
        return RefundResult(
            refund_id=f"mock_refund_{_suffix()}",
            payment_id=payment_id,
            amount=amount,
            status="processed",
            raw={"reason": reason, "mock": True},
        )

    async def get_payment_details(self, payment_id: str) -> Dict[str, Any]:
        return {"id": payment_id, "status": "captured", "method": "card", "mock": True}

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        return True


# Gateway payment status -> internal status
RAZORPAY_PAYMENT_STATUS = {
    "created": PaymentStatus.pending,
    "authorized": PaymentStatus.pending,
    "captured": PaymentStatus.completed,
    "refunded": PaymentStatus.refunded,
    "failed": PaymentStatus.failed,
}


class RazorpayPaymentProvider(PaymentProvider):
    """Razorpay REST gateway. Amounts cross the wire in paise."""

    name = "razorpay"

    def __init__(self, key_id: str, key_secret: str, webhook_secret: Optional[str] = None,
                 base_url: str = "https://api.razorpay.com/v1", transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = 15.0, verify_retries: int = 2, order_expiry_minutes: int = 15,
                 max_order_attempts: Optional[int] = None):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self.timeout = timeout
        self.verify_retries = verify_retries
        self.order_expiry_minutes = order_expiry_minutes
        self.max_order_attempts = max_order_attempts

    @property
    def max_verification_seconds(self) -> float:
        # every payment read attempt plus the order read
        return self.timeout * (self.verify_retries + 2)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.key_id, self.key_secret),
            timeout=self.timeout,
            transport=self.transport,
        )

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.request(method, path, json=json)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Razorpay {method} {path} returned {e.response.status_code}")
            raise ExternalServiceError(f"Payment gateway rejected the request ({e.response.status_code})")
        except httpx.RequestError as e:
            logger.error(f"Razorpay {method} {path} failed: {e}")
            raise ExternalServiceError("Payment gateway is unreachable")

    def expected_signature(self, order_id: str, payment_id: str) -> str:
        message = f"{order_id}|{payment_id}".encode()
        return hmac.new(self.key_secret.encode(), message, hashlib.sha256).hexdigest()

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        return hmac.compare_digest(self.expected_signature(order_id, payment_id), signature)

    async def create_order(self, request: OrderRequest) -> OrderResponse:
        body = {
            "amount": request.amount * 100,
            "currency": request.currency,
            "receipt": request.receipt,
            "notes": request.notes,
        }
        data = await self._request("POST", "/orders", json=body)
        logger.info(f"Razorpay order {data.get('id')} created")
        return OrderResponse(
            order_id=data["id"],
            amount=request.amount,
            currency=data.get("currency", request.currency),
            status=data.get("status", "created"),
            payment_url=None,
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=request.expires_in_minutes),
            raw=data,
        )

    async def verify_payment(self, payment_id: str, signature: Optional[str] = None, order_id: Optional[str] = None) -> VerificationResult:
        if signature is not None:
            if not order_id or not self.verify_signature(order_id, payment_id, signature):
                logger.warning(f"Signature mismatch for payment {payment_id}")
                raise InvalidSignatureError("Payment signature verification failed")

        # Verification is a read, so transport failures are retried
        last_error = None
        for attempt in range(1, self.verify_retries + 2):
            try:
                data = await self._request("GET", f"/payments/{payment_id}")
                break
            except ExternalServiceError as e:
                last_error = e
                logger.warning(f"Payment verification attempt {attempt} failed for {payment_id}")
        else:
            raise last_error

        status = RAZORPAY_PAYMENT_STATUS.get(data.get("status"), PaymentStatus.failed)
        if order_id and data.get("order_id") and data["order_id"] != order_id:
            logger.warning(f"Payment {payment_id} belongs to order {data['order_id']}, expected {order_id}")
            status = PaymentStatus.failed
        order_expired = False
        if status != PaymentStatus.completed and order_id:
            order_expired = await self._order_expired(order_id)
        amount = data.get("amount")
        return VerificationResult(
            payment_id=payment_id,
            order_id=data.get("order_id", order_id),
            status=status,
            order_expired=order_expired,
            amount=amount // 100 if isinstance(amount, int) else None,
            method=data.get("method"),
            raw=data,
        )

    async def _order_expired(self, order_id: str) -> bool:
        """True when an unpaid order is past its window or has used up its attempts."""
        try:
            order = await self._request("GET", f"/orders/{order_id}")
        except ExternalServiceError:
            logger.warning(f"Could not read order {order_id}; treating it as open")
            return False
        if order.get("status") == "paid":
            return False
        if order.get("status") == "expired":
            return True
        created_at = order.get("created_at")
        if isinstance(created_at, int):
            deadline = datetime.fromtimestamp(created_at, timezone.utc) + timedelta(minutes=self.order_expiry_minutes)
            if deadline <= datetime.now(timezone.utc):
                return True
        attempts = order.get("attempts")
        return bool(self.max_order_attempts and isinstance(attempts, int) and attempts >= self.max_order_attempts)

    async def refund_payment(self, payment_id: str, amount: Optional[int] = None, reason: Optional[str] = None) -> RefundResult:
        body: Dict[str, Any] = {"notes": {"reason": reason or "Consultation refund"}}
        if amount is not None:
            body["amount"] = amount * 100
        data = await self._request("POST", f"/payments/{payment_id}/refund", json=body)
        refunded = data.get("amount")
        return RefundResult(
            refund_id=data["id"],
            payment_id=payment_id,
            amount=refunded // 100 if isinstance(refunded, int) else amount,
            status=data.get("status", "pending"),
            raw=data,
        )

    async def get_payment_details(self, payment_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/payments/{payment_id}")

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        if not self.webhook_secret or not signature:
            return False
        expected = hmac.new(self.webhook_secret.encode(), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)


def build_payment_provider(settings: Settings) -> PaymentProvider:
    if settings.payment_provider == "razorpay":
        if not settings.razorpay_enabled:
            raise ValueError("RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET are required for the razorpay provider")
        return RazorpayPaymentProvider(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            webhook_secret=settings.razorpay_webhook_secret,
            base_url=settings.razorpay_base_url,
            timeout=settings.razorpay_timeout_seconds,
            order_expiry_minutes=settings.payment_order_expiry_minutes,
            max_order_attempts=settings.razorpay_max_order_attempts,
        )
    if settings.payment_provider != "mock":
        logger.warning(f"Unknown payment provider '{settings.payment_provider}', falling back to mock")
    return MockPaymentProvider(base_url=settings.mock_payment_base_url)


@lru_cache()
def get_payment_provider() -> PaymentProvider:
    return build_payment_provider(get_settings())
