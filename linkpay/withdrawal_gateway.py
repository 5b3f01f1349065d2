"""Client for the shielded-pool withdrawal relayer.

Proofs, UTXO selection and signing all happen on the relayer side; this module
only moves an amount and a recipient over HTTP and reports what came back.
"""
import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from linkpay import config
from linkpay.errors import GatewayError, GatewayFailure

logger = logging.getLogger(__name__)

# Relayer error codes -> failure reasons
ERROR_CODES = {
    "insufficient_pool_balance": GatewayFailure.INSUFFICIENT_POOL_BALANCE,
    "insufficient_balance": GatewayFailure.INSUFFICIENT_POOL_BALANCE,
    "invalid_recipient": GatewayFailure.INVALID_RECIPIENT,
    "invalid_address": GatewayFailure.INVALID_RECIPIENT,
}


@dataclass(frozen=True)
class WithdrawalResult:
    tx_ref: str
    net_amount_delivered: int
    fee_charged: int
    is_partial: bool


class WithdrawalGateway(Protocol):
    def withdraw(self, amount: int, recipient_address: str) -> WithdrawalResult:
        ...


class HttpWithdrawalGateway:
    def __init__(self, base_url: str, api_key: str | None = None, timeout: float = 60.0, transport=None):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def withdraw(self, amount: int, recipient_address: str) -> WithdrawalResult:
        try:
            response = self.client.post(
                "/withdraw",
                json={"lamports": amount, "recipientAddress": recipient_address},
            )
        except httpx.TimeoutException as exc:
            raise GatewayError("Withdrawal request timed out", GatewayFailure.TIMEOUT) from exc
        except httpx.TransportError as exc:
            raise GatewayError("Could not reach the withdrawal relayer", GatewayFailure.NETWORK) from exc

        if response.is_error:
            raise self._error_from_response(response)

        try:
            body = response.json()
            result = WithdrawalResult(
                tx_ref=str(body["tx"]),
                net_amount_delivered=int(body["amountInLamports"]),
                fee_charged=int(body["feeInLamports"]),
                is_partial=bool(body.get("isPartial", False)),
            )
        except (ValueError, KeyError, TypeError) as exc:
            # The relayer answered 2xx but we cannot tell what it did
            raise GatewayError(
                f"Malformed withdrawal response: {response.text[:200]}",
                GatewayFailure.UNCONFIRMED,
            ) from exc

        logger.info(
            "Relayer withdrew %s to %s: tx=%s fee=%s partial=%s",
            result.net_amount_delivered,
            recipient_address,
            result.tx_ref,
            result.fee_charged,
            result.is_partial,
        )
        return result

    @staticmethod
    def _error_from_response(response: httpx.Response) -> GatewayError:
        code = None
        message = f"Relayer returned HTTP {response.status_code}"
        try:
            body = response.json()
        except ValueError:
            body = None
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            code = error.get("code")
            message = error.get("message") or message
        elif isinstance(error, str):
            message = error

        if code in ERROR_CODES:
            reason = ERROR_CODES[code]
        elif response.status_code in (502, 503, 504):
            reason = GatewayFailure.NETWORK
        elif response.status_code == 408:
            reason = GatewayFailure.TIMEOUT
        else:
            reason = GatewayFailure.REJECTED
        return GatewayError(message, reason)

    def close(self) -> None:
        self.client.close()


_gateway = None


def get_withdrawal_gateway() -> WithdrawalGateway:
    global _gateway
    if _gateway is None:
        _gateway = HttpWithdrawalGateway(
            config.gateway_url(),
            api_key=config.gateway_api_key(),
            timeout=config.gateway_timeout(),
        )
    return _gateway


def close_withdrawal_gateway() -> None:
    global _gateway
    if _gateway is not None:
        _gateway.close()
        _gateway = None
