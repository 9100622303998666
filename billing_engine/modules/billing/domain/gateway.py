"""
Payment Gateway Adapter - MercadoPago

Thin async client used by the billing engine to:
- Create a renewal checkout preference for a pending Payment
- Look up the authoritative status of a gateway payment (charge)
- Find a charge by our external reference when no notification arrived

The engine only asks questions; it never lets the gateway push state
except through the reconciler.

Idempotency: the local Payment id is sent both as `external_reference` and
as the `X-Idempotency-Key` header, so replaying a creation request for the
same Payment cannot open a second charge.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol
from uuid import UUID

import httpx
import structlog
import tenacity

from billing_engine.models.subscription import PaymentStatus
from billing_engine.shared.core.config import get_settings
from billing_engine.shared.core.exceptions import (
    ConfigurationError,
    GatewayError,
    GatewayTimeoutError,
)
from billing_engine.shared.core.pricing import BillingCycle, get_tier_name

logger = structlog.get_logger()

# MercadoPago payment statuses -> local Payment status
GATEWAY_STATUS_MAP = {
    "approved": PaymentStatus.APPROVED,
    "rejected": PaymentStatus.REJECTED,
    "cancelled": PaymentStatus.REJECTED,
    "refunded": PaymentStatus.REJECTED,
    "charged_back": PaymentStatus.REJECTED,
    "pending": PaymentStatus.PENDING,
    "in_process": PaymentStatus.PENDING,
    "in_mediation": PaymentStatus.PENDING,
    "authorized": PaymentStatus.PENDING,
}


def map_gateway_status(raw_status: Optional[str]) -> PaymentStatus:
    status = GATEWAY_STATUS_MAP.get((raw_status or "").lower())
    if status is None:
        logger.warning("gateway_unknown_payment_status", raw_status=raw_status)
        return PaymentStatus.PENDING
    return status


@dataclass(frozen=True)
class RenewalChargeRequest:
    payment_id: UUID
    subscription_id: UUID
    tenant_id: UUID
    tenant_name: str
    tenant_email: Optional[str]
    plan_tier: str
    billing_cycle: str
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class ChargeResult:
    order_id: str
    checkout_url: str


@dataclass(frozen=True)
class ChargeStatus:
    charge_id: str
    status: PaymentStatus
    paid_at: Optional[datetime] = None
    external_reference: Optional[str] = None
    raw_status: Optional[str] = None
    status_detail: Optional[str] = None


class PaymentGateway(Protocol):
    async def create_renewal_charge(self, request: RenewalChargeRequest) -> ChargeResult:
        ...

    async def get_charge_status(self, charge_id: str) -> ChargeStatus:
        ...

    async def find_charge_by_reference(self, reference: str) -> Optional[ChargeStatus]:
        ...


def _log_retry(retry_state: tenacity.RetryCallState) -> None:
    logger.warning(
        "gateway_request_retry",
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
    )


# Only connection failures are retried in place; timeouts are left for the next tick
gateway_retry = tenacity.retry(
    retry=tenacity.retry_if_exception_type(httpx.ConnectError),
    wait=tenacity.wait_exponential(multiplier=1, min=1, max=4),
    stop=tenacity.stop_after_attempt(3),
    before_sleep=_log_retry,
    reraise=True,
)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class MercadoPagoGateway:
    """Async wrapper for the MercadoPago checkout and payments APIs."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.access_token = access_token or settings.MERCADOPAGO_ACCESS_TOKEN
        if not self.access_token:
            raise ConfigurationError("MERCADOPAGO_ACCESS_TOKEN not configured")

        self.base_url = (base_url or settings.MERCADOPAGO_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS
        self.frontend_url = settings.FRONTEND_URL
        self.backend_url = settings.BACKEND_URL
        self.sandbox = self.access_token.startswith("TEST-")
        self._transport = transport
        self.headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    @gateway_retry
    async def _send(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            response = await client.request(
                method,
                path,
                json=json,
                params=params,
                headers={**self.headers, **(headers or {})},
            )
            response.raise_for_status()
            return response.json()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            return await self._send(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("gateway_timeout", path=path, timeout=self.timeout)
            raise GatewayTimeoutError(
                f"MercadoPago did not answer within {self.timeout}s",
                details={"path": path},
            ) from e
        except httpx.HTTPStatusError as e:
            logger.error("gateway_api_error", path=path, status_code=e.response.status_code)
            raise GatewayError(
                f"MercadoPago returned {e.response.status_code} for {path}",
                details={"path": path, "status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            logger.error("gateway_transport_error", path=path, error=str(e))
            raise GatewayError(f"MercadoPago request failed: {e}", details={"path": path}) from e

    async def create_renewal_charge(self, request: RenewalChargeRequest) -> ChargeResult:
        """Create a checkout preference for the given pending Payment."""
        plan_name = get_tier_name(request.plan_tier)
        cycle_label = "Anual" if request.billing_cycle == BillingCycle.YEARLY.value else "Mensual"
        reference = str(request.payment_id)

        data = {
            "items": [{
                "title": f"Renovación {plan_name} - {cycle_label}",
                "description": f"Renovación de suscripción para {request.tenant_name}",
                "quantity": 1,
                "currency_id": request.currency,
                "unit_price": float(request.amount),
            }],
            "payer": {"name": request.tenant_name, "email": request.tenant_email},
            "back_urls": {
                "success": f"{self.frontend_url}/subscription/success?payment={reference}",
                "failure": f"{self.frontend_url}/subscription/failure?payment={reference}",
                "pending": f"{self.frontend_url}/subscription/pending?payment={reference}",
            },
            "auto_return": "approved",
            "external_reference": reference,
            "notification_url": f"{self.backend_url}/api/mercadopago/webhook",
            "metadata": {
                "subscription_id": str(request.subscription_id),
                "business_id": str(request.tenant_id),
                "payment_id": reference,
                "plan_type": request.plan_tier,
                "billing_cycle": request.billing_cycle,
                "is_renewal": True,
            },
        }

        response = await self._request(
            "POST",
            "/checkout/preferences",
            json=data,
            headers={"X-Idempotency-Key": reference},
        )

        checkout_url = response.get("sandbox_init_point") if self.sandbox else response.get("init_point")
        if not response.get("id") or not checkout_url:
            raise GatewayError("MercadoPago preference response is missing id or checkout link")

        logger.info(
            "gateway_renewal_charge_created",
            payment_id=reference,
            order_id=response["id"],
            sandbox=self.sandbox,
        )
        return ChargeResult(order_id=str(response["id"]), checkout_url=checkout_url)

    def _to_status(self, data: Dict[str, Any]) -> ChargeStatus:
        raw_status = data.get("status")
        return ChargeStatus(
            charge_id=str(data.get("id")),
            status=map_gateway_status(raw_status),
            paid_at=_parse_timestamp(data.get("date_approved")),
            external_reference=data.get("external_reference"),
            raw_status=raw_status,
            status_detail=data.get("status_detail"),
        )

    async def get_charge_status(self, charge_id: str) -> ChargeStatus:
        data = await self._request("GET", f"/v1/payments/{charge_id}")
        return self._to_status(data)

    async def find_charge_by_reference(self, reference: str) -> Optional[ChargeStatus]:
        """Newest gateway payment for our reference, preferring an approved one."""
        data = await self._request(
            "GET",
            "/v1/payments/search",
            params={
                "external_reference": reference,
                "sort": "date_created",
                "criteria": "desc",
            },
        )
        results = data.get("results") or []
        if not results:
            return None
        approved = [r for r in results if (r.get("status") or "").lower() == "approved"]
        return self._to_status(approved[0] if approved else results[0])
