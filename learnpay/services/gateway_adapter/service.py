"""Razorpay adapter: remote order creation and local signature checks.

Only `create_remote_order` touches the network. Signature verification is a
pure HMAC comparison and never raises on malformed input.
"""

import hashlib
import hmac
from time import perf_counter

import httpx
from pydantic import BaseModel

from learnpay.common.config import settings
from learnpay.common.errors import GatewayUnavailable, InvalidAmount
from learnpay.common.logging import logger
from learnpay.common.metrics import gateway_request_seconds


class RemoteOrder(BaseModel):
    """Order as acknowledged by the gateway."""

    remote_order_id: str
    amount_minor: int
    currency: str


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayGateway:
    """Thin client over the gateway's Orders API."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout_seconds: float = 10.0,
        webhook_secret: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
        service_name: str = "reconciliation",
    ) -> None:
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.webhook_secret = webhook_secret
        self.transport = transport
        self.service_name = service_name

    @classmethod
    def from_settings(cls) -> "RazorpayGateway":
        return cls(
            key_id=settings.gateway_key_id,
            key_secret=settings.gateway_key_secret,
            base_url=settings.gateway_base_url,
            timeout_seconds=settings.gateway_timeout_seconds,
            webhook_secret=settings.gateway_webhook_secret,
            service_name=settings.service_name,
        )

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    async def create_remote_order(self, amount_minor: int, currency: str, idempotency_key: str) -> RemoteOrder:
        """Create an order at the gateway within the configured timeout.

        `idempotency_key` is sent as the gateway receipt so retried creations
        can be matched on the provider side.
        """

        if not isinstance(amount_minor, int) or amount_minor <= 0:
            raise InvalidAmount("gateway order amount must be a positive integer of minor units")
        if not self.configured:
            raise GatewayUnavailable("online payment is not configured")

        body = {
            "amount": amount_minor,
            "currency": currency.upper(),
            "receipt": idempotency_key[:40],
            "notes": {"idempotency_key": idempotency_key},
        }
        start = perf_counter()
        outcome = "error"
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout_seconds,
                transport=self.transport,
            ) as client:
                resp = await client.post("/orders", json=body)
            if resp.status_code >= 400:
                logger.error(
                    "gateway_order_rejected status=%s body=%s",
                    resp.status_code,
                    resp.text[:500],
                )
                raise GatewayUnavailable(f"gateway rejected order creation (status={resp.status_code})")
            payload = resp.json()
            order = RemoteOrder(
                remote_order_id=str(payload["id"]),
                amount_minor=int(payload.get("amount", amount_minor)),
                currency=str(payload.get("currency") or currency).upper(),
            )
            outcome = "ok"
            return order
        except httpx.TimeoutException as exc:
            outcome = "timeout"
            logger.warning("gateway_order_timeout timeout_s=%s", self.timeout_seconds)
            raise GatewayUnavailable("payment gateway timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("gateway_order_transport_error error=%s", exc)
            raise GatewayUnavailable("payment gateway unreachable") from exc
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("gateway_order_malformed_response error=%s", exc)
            raise GatewayUnavailable("payment gateway returned a malformed order") from exc
        finally:
            gateway_request_seconds.labels(service=self.service_name, outcome=outcome).observe(
                max(0.0, perf_counter() - start)
            )

    def verify_signature(self, remote_order_id, remote_payment_id, signature) -> bool:
        """Check the checkout signature: HMAC-SHA256 of `order_id|payment_id`."""

        if not self.key_secret:
            return False
        if not all(isinstance(value, str) and value for value in (remote_order_id, remote_payment_id, signature)):
            return False
        expected = _hmac_hex(self.key_secret, f"{remote_order_id}|{remote_payment_id}".encode("utf-8"))
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8", "replace"))

    def verify_webhook_signature(self, body, signature) -> bool:
        """Check a webhook delivery: HMAC-SHA256 of the raw body."""

        if not self.webhook_secret:
            return False
        if not isinstance(body, (bytes, bytearray)) or not isinstance(signature, str) or not signature:
            return False
        expected = _hmac_hex(self.webhook_secret, bytes(body))
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8", "replace"))
