import json

import httpx
import pytest

from linkpay.errors import GatewayError, GatewayFailure
from linkpay.withdrawal_gateway import HttpWithdrawalGateway, close_withdrawal_gateway, get_withdrawal_gateway

RECIPIENT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


def make_gateway(handler, api_key="relayer-key"):
    return HttpWithdrawalGateway(
        "http://relayer.test",
        api_key=api_key,
        timeout=5.0,
        transport=httpx.MockTransport(handler),
    )


def test_withdraw_success():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "tx": "5gZ1wd",
            "amountInLamports": 3_965_000,
            "feeInLamports": 6_035_000,
            "isPartial": False,
        })

    result = make_gateway(handler).withdraw(10_000_000, RECIPIENT)

    assert seen["path"] == "/withdraw"
    assert seen["auth"] == "Bearer relayer-key"
    assert seen["body"] == {"lamports": 10_000_000, "recipientAddress": RECIPIENT}
    assert result.tx_ref == "5gZ1wd"
    assert result.net_amount_delivered == 3_965_000
    assert result.fee_charged == 6_035_000
    assert result.is_partial is False


def test_withdraw_partial_flag():
    def handler(request):
        return httpx.Response(200, json={
            "tx": "partial_tx",
            "amountInLamports": 1_000,
            "feeInLamports": 6_000_000,
            "isPartial": True,
        })

    assert make_gateway(handler).withdraw(10_000_000, RECIPIENT).is_partial is True


def test_no_auth_header_without_api_key():
    def handler(request):
        assert "authorization" not in request.headers
        return httpx.Response(200, json={"tx": "t", "amountInLamports": 1, "feeInLamports": 1})

    make_gateway(handler, api_key=None).withdraw(10_000_000, RECIPIENT)


@pytest.mark.parametrize(
    "status, body, reason",
    [
        (400, {"error": {"code": "insufficient_pool_balance", "message": "Pool too small"}}, GatewayFailure.INSUFFICIENT_POOL_BALANCE),
        (400, {"error": {"code": "invalid_recipient", "message": "Bad address"}}, GatewayFailure.INVALID_RECIPIENT),
        (503, {"error": "relayer overloaded"}, GatewayFailure.NETWORK),
        (500, {"error": "proof generation failed"}, GatewayFailure.REJECTED),
    ],
)
def test_error_responses_are_classified_by_code(status, body, reason):
    def handler(request):
        return httpx.Response(status, json=body)

    with pytest.raises(GatewayError) as exc_info:
        make_gateway(handler).withdraw(10_000_000, RECIPIENT)

    assert exc_info.value.reason == reason


def test_timeout_is_a_gateway_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(GatewayError) as exc_info:
        make_gateway(handler).withdraw(10_000_000, RECIPIENT)

    assert exc_info.value.reason == GatewayFailure.TIMEOUT
    assert exc_info.value.retryable is True


def test_connection_error_is_a_network_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError) as exc_info:
        make_gateway(handler).withdraw(10_000_000, RECIPIENT)

    assert exc_info.value.reason == GatewayFailure.NETWORK


def test_malformed_success_body_is_unconfirmed():
    def handler(request):
        return httpx.Response(200, json={"signature": "missing fields"})

    with pytest.raises(GatewayError) as exc_info:
        make_gateway(handler).withdraw(10_000_000, RECIPIENT)

    assert exc_info.value.reason == GatewayFailure.UNCONFIRMED


def test_shared_gateway_is_closed_and_rebuilt():
    shared = get_withdrawal_gateway()
    assert get_withdrawal_gateway() is shared

    close_withdrawal_gateway()

    assert shared.client.is_closed
    fresh = get_withdrawal_gateway()
    assert fresh is not shared
    close_withdrawal_gateway()
