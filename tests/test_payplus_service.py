import json
from decimal import Decimal

import httpx
import pytest

from app.core.exceptions import ExternalGatewayError, GatewayPayloadError
from app.modules.payment.payplus_service import PayPlusClient


def make_client(handler, requests=None):
    def _handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return handler(request)

    return PayPlusClient(
        api_url="https://payplus.test/api/v1.0",
        api_key="key",
        secret_key="secret",
        terminal_uid="terminal-1",
        payment_page_uid="page-1",
        timeout=5,
        transport=httpx.MockTransport(_handler),
    )


def respond(body, status_code=200):
    return lambda request: httpx.Response(status_code, json=body)


@pytest.mark.asyncio
async def test_charge_token_success_sends_credentials():
    requests = []
    client = make_client(respond({"status": "approved", "transaction_uid": "tx-1"}), requests)

    result = await client.charge_token("tok-1", Decimal("10.00"), "ILS", "upgrade", {"subscription_id": 7})

    assert result.success is True
    assert result.transaction_id == "tx-1"
    [request] = requests
    assert request.url == "https://payplus.test/api/v1.0/Charges/ChargeWithToken"
    assert request.headers["api-key"] == "key"
    assert request.headers["secret-key"] == "secret"
    payload = json.loads(request.content)
    assert payload["payment_token"] == "tok-1"
    assert payload["amount"] == 10.0
    assert payload["terminal_uid"] == "terminal-1"
    assert payload["metadata"]["subscription_id"] == 7


@pytest.mark.asyncio
async def test_charge_token_declined():
    client = make_client(respond({"status": "declined", "error_message": "insufficient funds"}))

    result = await client.charge_token("tok-1", Decimal("10.00"), "ILS", "upgrade")

    assert result.success is False
    assert result.error == "insufficient funds"


@pytest.mark.asyncio
async def test_charge_token_transport_error_is_a_failed_result():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    client = make_client(handler)

    result = await client.charge_token("tok-1", Decimal("10.00"), "ILS", "upgrade")

    assert result.success is False
    assert "request failed" in result.error


@pytest.mark.asyncio
async def test_update_recurring_amount():
    requests = []
    client = make_client(respond({"results": {"status": "success"}}), requests)

    result = await client.update_recurring_amount("rec-1", Decimal("80.00"), "upgrade")

    assert result.success is True
    payload = json.loads(requests[0].content)
    assert payload["recurring_uid"] == "rec-1"
    assert payload["amount"] == 80.0
    assert payload["metadata"]["update_reason"] == "upgrade"


@pytest.mark.asyncio
async def test_update_recurring_amount_http_error():
    client = make_client(respond({"message": "bad"}, status_code=500))

    result = await client.update_recurring_amount("rec-1", Decimal("80.00"), "upgrade")

    assert result.success is False
    assert "HTTP 500" in result.error


@pytest.mark.asyncio
async def test_cancel_recurring_reports_gateway_message():
    client = make_client(respond({"results": {"status": "error", "message": "recurring not found"}}))

    result = await client.cancel_recurring("rec-1", immediate=False)

    assert result.success is False
    assert result.error == "recurring not found"


@pytest.mark.asyncio
async def test_create_payment_page_for_yearly_plan():
    requests = []
    body = {
        "results": {"status": "success"},
        "data": {"page_request_uid": "page-req-1", "payment_page_link": "https://pay.test/page-req-1"},
    }
    client = make_client(respond(body), requests)

    page = await client.create_payment_page(
        Decimal("800.00"), "ILS", "Pro Yearly", "user-1",
        more_info={"subscription_id": 3}, billing_period="yearly",
    )

    assert page.page_request_uid == "page-req-1"
    assert page.payment_page_link == "https://pay.test/page-req-1"
    payload = json.loads(requests[0].content)
    assert payload["charge_method"] == 3
    assert payload["more_info"] == "user-1"
    assert payload["recurring_settings"]["recurring_type"] == 3
    assert payload["recurring_settings"]["custom_fields"] == {"subscription_id": 3}
    assert payload["refURL_success"].endswith("/payment-result")


@pytest.mark.asyncio
async def test_create_payment_page_failure_raises():
    client = make_client(respond({"results": {"status": "error", "message": "terminal disabled"}}))

    with pytest.raises(ExternalGatewayError, match="terminal disabled"):
        await client.create_payment_page(Decimal("50.00"), "ILS", "Basic", "user-1")


@pytest.mark.asyncio
async def test_query_transaction_history_parses_entries():
    body = {
        "transactions": [
            {
                "uuid": "tx-1",
                "payment_page_payment_request": {"uuid": "page-req-1"},
                "information": {"status_code": "000", "approval_number": "0123", "amount_by_currency": 50},
                "recurring_charge_information": {"recurring_uid": "rec-1"},
            }
        ]
    }
    client = make_client(respond(body))

    history = await client.query_transaction_history("page-req-1")

    match = history.find_by_page_request("page-req-1")
    assert match.uuid == "tx-1"
    assert match.is_successful is True
    assert match.amount == Decimal("50")
    assert match.recurring_uid == "rec-1"


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [{"data": []}, {"transactions": "none"}, {"transactions": [{"information": {}}]}])
async def test_query_transaction_history_rejects_malformed_body(body):
    client = make_client(respond(body))

    with pytest.raises(GatewayPayloadError):
        await client.query_transaction_history("page-req-1")


@pytest.mark.asyncio
async def test_query_transaction_history_rejects_invalid_json():
    client = make_client(lambda request: httpx.Response(200, content=b"<html>"))

    with pytest.raises(ExternalGatewayError, match="invalid JSON"):
        await client.query_transaction_history("page-req-1")


@pytest.mark.asyncio
async def test_query_transaction_history_http_error_keeps_status():
    client = make_client(respond({}, status_code=503))

    with pytest.raises(ExternalGatewayError) as excinfo:
        await client.query_transaction_history("page-req-1")
    assert excinfo.value.status_code == 503


@pytest.mark.asyncio
async def test_query_recurring_charges_reads_nested_data():
    body = {
        "data": {
            "charges": [
                {"charge_number": 1, "transaction_uid": "c-1", "status_code": "000"},
                {"charge_number": 2, "transaction_uid": "c-2", "status_code": 51},
            ]
        }
    }
    client = make_client(respond(body))

    history = await client.query_recurring_charges("rec-1")

    latest = history.latest()
    assert latest.transaction_uid == "c-2"
    assert latest.status_code == "051"
    assert latest.is_successful is False


@pytest.mark.asyncio
async def test_query_recurring_charges_rejects_non_list():
    client = make_client(respond({"charges": {"charge_number": 1}}))

    with pytest.raises(GatewayPayloadError):
        await client.query_recurring_charges("rec-1")
