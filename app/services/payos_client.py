"""PayOS gateway adapter.

One `PaymentGateway` contract with two implementations: `PayOSClient` talks to the PayOS
merchant API over HTTPS, `MockGateway` stands in for it when `PAYMENT_USE_MOCK` is set or
when credentials are missing outside production. The implementation is picked once by
`get_gateway()`.
"""
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone

import requests

from app.core.config import settings
from app.core.errors import ValidationError

logger = logging.getLogger(__name__)

DESCRIPTION_MAX = 25  # PayOS rejects longer descriptions
ITEM_NAME_MAX = 50
SUCCESS_CODE = "00"


class GatewayError(RuntimeError):
    pass


def truncate(value: str, length: int) -> str:
    return value[:length] if value and len(value) > length else value


def _hmac_sha256_hex(key: str, msg: str) -> str:
    return hmac.new(key.encode("utf-8"), msg.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_code_desc(code: str, desc: str, checksum_key: str) -> str:
    """Webhook signature over the concatenated envelope code and description."""
    return _hmac_sha256_hex(checksum_key, f"{code or ''}{desc or ''}")


def sign_data(data: dict, checksum_key: str) -> str:
    """PayOS data signature: HMAC-SHA256 over `key=value` pairs sorted by key, joined by `&`."""
    parts = []
    for k in sorted(data):
        v = data[k]
        if v is None or v == "null":
            v = ""
        parts.append(f"{k}={v}")
    return _hmac_sha256_hex(checksum_key, "&".join(parts))


def _extract_signature(body: dict, headers: dict) -> str | None:
    lowered = {str(k).lower(): v for k, v in (headers or {}).items()}
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    return (
        lowered.get("x-payos-signature")
        or lowered.get("x-payos-sign")
        or body.get("signature")
        or body.get("sign")
        or data.get("signature")
    )


def verify_webhook_signature(body: dict, headers: dict, checksum_key: str) -> dict:
    """Check the webhook signature and return the verified `data` payload.

    Accepts either the PayOS data signature or the code+desc HMAC, read from the
    `x-payos-signature`/`x-payos-sign` header or the body `signature`/`sign` field.
    """
    if not checksum_key:
        raise ValidationError("Missing PAYOS_CHECKSUM_KEY for webhook verification")
    signature = _extract_signature(body, headers)
    if not signature:
        raise ValidationError("Invalid webhook signature: signature missing")
    provided = str(signature).lower()

    data = body.get("data") if isinstance(body.get("data"), dict) else None
    candidates = [sign_code_desc(body.get("code"), body.get("desc"), checksum_key)]
    if data:
        candidates.append(sign_data({k: v for k, v in data.items() if k != "signature"}, checksum_key))

    if not any(hmac.compare_digest(c.encode("utf-8"), provided.encode("utf-8")) for c in candidates):
        raise ValidationError("Invalid webhook signature")

    if data:
        return {k: v for k, v in data.items() if k != "signature"}
    return {
        "orderCode": body.get("orderCode"),
        "amount": body.get("amount"),
        "code": body.get("code"),
        "desc": body.get("desc"),
    }


@dataclass
class PaymentLinkRequest:
    order_code: int
    amount: int
    description: str
    return_url: str
    cancel_url: str
    items: list[dict] = field(default_factory=list)
    buyer_name: str | None = None
    buyer_email: str | None = None
    expired_at: int | None = None  # unix seconds

    def to_payload(self) -> dict:
        payload = {
            "orderCode": self.order_code,
            "amount": self.amount,
            "description": truncate(self.description, DESCRIPTION_MAX),
            "items": self.items,
            "returnUrl": self.return_url,
            "cancelUrl": self.cancel_url,
        }
        if self.buyer_name:
            payload["buyerName"] = self.buyer_name
        if self.buyer_email:
            payload["buyerEmail"] = self.buyer_email
        if self.expired_at:
            payload["expiredAt"] = self.expired_at
        return payload


@dataclass
class PaymentLink:
    checkout_url: str
    qr_code: str | None
    gateway_id: str | None
    raw: dict = field(default_factory=dict)


@dataclass
class RefundResult:
    refund_id: str
    status: str
    raw: dict = field(default_factory=dict)


class PaymentGateway:
    """Contract every gateway implementation fulfils."""

    name = "gateway"

    def create_payment_link(self, req: PaymentLinkRequest) -> PaymentLink:
        raise NotImplementedError

    def get_payment_link(self, order_code: int) -> dict:
        raise NotImplementedError

    def cancel_payment_link(self, order_code: int, reason: str = "") -> dict:
        raise NotImplementedError

    def refund_payment(self, order_code: int, amount: int, reason: str = "") -> RefundResult:
        raise NotImplementedError

    def verify_webhook(self, body: dict, headers: dict | None = None) -> dict:
        raise NotImplementedError


@dataclass
class PayOSConfig:
    client_id: str
    api_key: str
    checksum_key: str
    base_url: str = "https://api-merchant.payos.vn"
    timeout: int = 25


class PayOSClient(PaymentGateway):
    name = "payos"

    def __init__(self, cfg: PayOSConfig):
        self.cfg = cfg

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "x-client-id": self.cfg.client_id,
            "x-api-key": self.cfg.api_key,
        }

    def request(self, method: str, path: str, payload: dict | None = None) -> dict:
        url = f"{self.cfg.base_url.rstrip('/')}{path}"
        try:
            r = requests.request(method=method.upper(), url=url, json=payload, headers=self._headers(), timeout=self.cfg.timeout)
        except requests.RequestException as e:
            raise GatewayError(f"PayOS request failed: {e}") from e
        try:
            body = r.json() if r.text else {}
        except ValueError:
            body = {"raw": r.text}
        if r.status_code >= 400:
            raise GatewayError(f"PayOS {r.status_code}: {body}")
        code = str(body.get("code", SUCCESS_CODE))
        if code != SUCCESS_CODE:
            raise GatewayError(f"PayOS error {code}: {body.get('desc') or 'unknown error'}")
        return body.get("data") or {}

    def create_payment_link(self, req: PaymentLinkRequest) -> PaymentLink:
        payload = req.to_payload()
        payload["signature"] = sign_data(
            {
                "amount": payload["amount"],
                "cancelUrl": payload["cancelUrl"],
                "description": payload["description"],
                "orderCode": payload["orderCode"],
                "returnUrl": payload["returnUrl"],
            },
            self.cfg.checksum_key,
        )
        data = self.request("POST", "/v2/payment-requests", payload)
        checkout_url = data.get("checkoutUrl") or data.get("url")
        if not checkout_url:
            raise GatewayError("PayOS did not return a valid checkout URL")
        return PaymentLink(
            checkout_url=checkout_url,
            qr_code=data.get("qrCode"),
            gateway_id=data.get("paymentLinkId") or data.get("id"),
            raw={
                "paymentLinkId": data.get("paymentLinkId") or data.get("id"),
                "bin": data.get("bin"),
                "accountNumber": data.get("accountNumber"),
                "qrCode": data.get("qrCode"),
            },
        )

    def get_payment_link(self, order_code: int) -> dict:
        return self.request("GET", f"/v2/payment-requests/{int(order_code)}")

    def cancel_payment_link(self, order_code: int, reason: str = "") -> dict:
        payload = {"cancellationReason": reason} if reason else {}
        return self.request("POST", f"/v2/payment-requests/{int(order_code)}/cancel", payload)

    def refund_payment(self, order_code: int, amount: int, reason: str = "") -> RefundResult:
        data = self.request(
            "POST",
            f"/v2/payment-requests/{int(order_code)}/refunds",
            {"amount": int(amount), "reason": reason},
        )
        refund_id = str(data.get("refundId") or data.get("id") or "")
        if not refund_id:
            raise GatewayError("PayOS did not return a refund id")
        return RefundResult(refund_id=refund_id, status=str(data.get("status") or "completed").lower(), raw=data)

    def verify_webhook(self, body: dict, headers: dict | None = None) -> dict:
        return verify_webhook_signature(body, headers or {}, self.cfg.checksum_key)


class MockGateway(PaymentGateway):
    """Local stand-in: fabricates checkout links and settles refunds immediately."""

    name = "mock"

    def __init__(self, checksum_key: str = "", frontend_url: str = "http://localhost:3000"):
        self.checksum_key = checksum_key
        self.frontend_url = frontend_url.rstrip("/")

    def create_payment_link(self, req: PaymentLinkRequest) -> PaymentLink:
        link_id = secrets.token_hex(8)
        return PaymentLink(
            checkout_url=f"{self.frontend_url}/mock-checkout/{req.order_code}",
            qr_code=f"MOCKQR|{req.order_code}|{req.amount}",
            gateway_id=link_id,
            raw={"paymentLinkId": link_id, "mock": True},
        )

    def get_payment_link(self, order_code: int) -> dict:
        return {"orderCode": int(order_code), "status": "PENDING", "mock": True}

    def cancel_payment_link(self, order_code: int, reason: str = "") -> dict:
        return {"orderCode": int(order_code), "status": "CANCELLED", "cancellationReason": reason, "mock": True}

    def refund_payment(self, order_code: int, amount: int, reason: str = "") -> RefundResult:
        refund_id = f"mock_refund_{secrets.token_hex(6)}"
        return RefundResult(
            refund_id=refund_id,
            status="completed",
            raw={
                "refundId": refund_id,
                "orderCode": int(order_code),
                "amount": int(amount),
                "processedAt": datetime.now(timezone.utc).isoformat(),
                "mock": True,
            },
        )

    def verify_webhook(self, body: dict, headers: dict | None = None) -> dict:
        return verify_webhook_signature(body, headers or {}, self.checksum_key)


_gateway: PaymentGateway | None = None


def build_gateway() -> PaymentGateway:
    if settings.PAYMENT_USE_MOCK:
        logger.info("PAYMENT_USE_MOCK is set; using mock payment gateway")
        return MockGateway(settings.PAYOS_CHECKSUM_KEY, settings.FRONTEND_URL)
    if not settings.payos_configured:
        if settings.is_production:
            raise RuntimeError("PayOS configuration incomplete (PAYOS_CLIENT_ID, PAYOS_API_KEY, PAYOS_CHECKSUM_KEY)")
        logger.warning("PayOS credentials missing; using mock payment gateway in %s", settings.ENV)
        return MockGateway(settings.PAYOS_CHECKSUM_KEY, settings.FRONTEND_URL)
    logger.info("PayOS client initialized (client id %s...)", settings.PAYOS_CLIENT_ID[:8])
    return PayOSClient(PayOSConfig(
        client_id=settings.PAYOS_CLIENT_ID,
        api_key=settings.PAYOS_API_KEY,
        checksum_key=settings.PAYOS_CHECKSUM_KEY,
        base_url=settings.PAYOS_BASE_URL,
        timeout=settings.PAYOS_TIMEOUT,
    ))


def get_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        _gateway = build_gateway()
    return _gateway


def set_gateway(gateway: PaymentGateway | None) -> None:
    """Swap the process-wide gateway (tests, workers with custom wiring)."""
    global _gateway
    _gateway = gateway
