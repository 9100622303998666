"""
Tests for MercadoPagoGateway

Uses httpx.MockTransport so no request leaves the process.

Tests cover:
- Renewal preference payload, idempotency key and checkout link selection
- Payment status mapping
- Error translation (HTTP errors, timeouts, connection retries)
"""

import json
import pytest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch
from uuid import uuid4

import httpx
import tenacity

from billing_engine.models import PaymentStatus
from billing_engine.shared.core.exceptions import ConfigurationError, GatewayError, GatewayTimeoutError
from billing_engine.modules.billing.domain.gateway import (
    MercadoPagoGateway,
    RenewalChargeRequest,
    map_gateway_status,
)


def _request(**overrides):
    values = dict(
        payment_id=uuid4(),
        subscription_id=uuid4(),
        tenant_id=uuid4(),
        tenant_name="Salon Aurora",
        tenant_email="owner@salon.test",
        plan_tier="PREMIUM",
        billing_cycle="YEARLY",
        amount=Decimal("249000"),
        currency="ARS",
    )
    values.update(overrides)
    return RenewalChargeRequest(**values)


def _gateway(handler, token="TEST-123"):
    return MercadoPagoGateway(
        access_token=token,
        base_url="https://api.mercadopago.test",
        timeout=2,
        transport=httpx.MockTransport(handler),
    )


class TestConfiguration:
    def test_missing_token_raises(self):
        settings = MagicMock(MERCADOPAGO_ACCESS_TOKEN=None)
        with patch("billing_engine.modules.billing.domain.gateway.get_settings", return_value=settings):
            with pytest.raises(ConfigurationError):
                MercadoPagoGateway()

    def test_sandbox_detected_from_token(self):
        assert _gateway(lambda r: httpx.Response(200), token="TEST-abc").sandbox
        assert not _gateway(lambda r: httpx.Response(200), token="APP_USR-abc").sandbox


class TestCreateRenewalCharge:
    @pytest.mark.asyncio
    async def test_preference_payload(self):
        captured = {}

        def handler(request: httpx.Request):
            captured["request"] = request
            return httpx.Response(200, json={
                "id": "pref-42",
                "init_point": "https://mp.test/live",
                "sandbox_init_point": "https://mp.test/sandbox",
            })

        charge_request = _request()
        result = await _gateway(handler).create_renewal_charge(charge_request)

        assert result.order_id == "pref-42"
        assert result.checkout_url == "https://mp.test/sandbox"

        sent = captured["request"]
        body = json.loads(sent.content)
        assert sent.method == "POST"
        assert sent.url.path == "/checkout/preferences"
        assert sent.headers["X-Idempotency-Key"] == str(charge_request.payment_id)
        assert sent.headers["Authorization"] == "Bearer TEST-123"
        assert body["external_reference"] == str(charge_request.payment_id)
        assert body["items"][0]["unit_price"] == 249000.0
        assert body["items"][0]["currency_id"] == "ARS"
        assert body["items"][0]["title"] == "Renovación Premium Plan - Anual"
        assert body["metadata"]["is_renewal"] is True
        assert body["metadata"]["subscription_id"] == str(charge_request.subscription_id)

    @pytest.mark.asyncio
    async def test_production_token_uses_live_link(self):
        def handler(request):
            return httpx.Response(200, json={"id": "pref-1", "init_point": "https://mp.test/live"})

        result = await _gateway(handler, token="APP_USR-1").create_renewal_charge(_request())
        assert result.checkout_url == "https://mp.test/live"

    @pytest.mark.asyncio
    async def test_incomplete_response_raises(self):
        def handler(request):
            return httpx.Response(200, json={"id": "pref-1"})

        with pytest.raises(GatewayError):
            await _gateway(handler).create_renewal_charge(_request())

    @pytest.mark.asyncio
    async def test_http_error_is_translated(self):
        def handler(request):
            return httpx.Response(400, json={"message": "invalid access_token=abc"})

        with pytest.raises(GatewayError) as exc:
            await _gateway(handler).create_renewal_charge(_request())

        assert exc.value.details["status_code"] == 400
        assert exc.value.code == "gateway_error"

    @pytest.mark.asyncio
    async def test_timeout_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(GatewayTimeoutError):
            await _gateway(handler).create_renewal_charge(_request())
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self, monkeypatch):
        monkeypatch.setattr(MercadoPagoGateway._send.retry, "wait", tenacity.wait_none())
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"id": "pref-9", "sandbox_init_point": "https://mp.test/s"})

        result = await _gateway(handler).create_renewal_charge(_request())

        assert result.order_id == "pref-9"
        assert len(calls) == 3


class TestChargeStatus:
    @pytest.mark.parametrize("raw,expected", [
        ("approved", PaymentStatus.APPROVED),
        ("rejected", PaymentStatus.REJECTED),
        ("cancelled", PaymentStatus.REJECTED),
        ("in_process", PaymentStatus.PENDING),
        ("APPROVED", PaymentStatus.APPROVED),
        ("something_new", PaymentStatus.PENDING),
        (None, PaymentStatus.PENDING),
    ])
    def test_status_mapping(self, raw, expected):
        assert map_gateway_status(raw) == expected

    @pytest.mark.asyncio
    async def test_get_charge_status(self):
        reference = str(uuid4())

        def handler(request):
            assert request.url.path == "/v1/payments/555"
            return httpx.Response(200, json={
                "id": 555,
                "status": "approved",
                "date_approved": "2026-03-10T09:15:00.000-03:00",
                "external_reference": reference,
            })

        charge = await _gateway(handler).get_charge_status("555")

        assert charge.charge_id == "555"
        assert charge.status == PaymentStatus.APPROVED
        assert charge.paid_at == datetime(2026, 3, 10, 12, 15, tzinfo=timezone.utc)
        assert charge.external_reference == reference

    @pytest.mark.asyncio
    async def test_search_prefers_approved(self):
        def handler(request):
            assert request.url.params["external_reference"] == "ref-1"
            return httpx.Response(200, json={"results": [
                {"id": 2, "status": "rejected", "external_reference": "ref-1"},
                {"id": 1, "status": "approved", "external_reference": "ref-1"},
            ]})

        charge = await _gateway(handler).find_charge_by_reference("ref-1")
        assert charge.charge_id == "1"
        assert charge.status == PaymentStatus.APPROVED

    @pytest.mark.asyncio
    async def test_search_without_results(self):
        def handler(request):
            return httpx.Response(200, json={"results": []})

        assert await _gateway(handler).find_charge_by_reference("ref-2") is None

    @pytest.mark.asyncio
    async def test_not_found_is_gateway_error(self):
        def handler(request):
            return httpx.Response(404, json={"message": "not found"})

        with pytest.raises(GatewayError):
            await _gateway(handler).get_charge_status("missing")
