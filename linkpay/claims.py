"""Claim orchestration.

A claim runs in three steps against the link store:

1. take the claim lock with a single conditional update (the only point where
   concurrent claimants are arbitrated);
2. ask the withdrawal gateway to pay out, with no transaction open;
3. record the result, or undo the lock if the payout failed.

If the payout may have happened but cannot be recorded, or the lock cannot be
released, the link is frozen for an operator instead of being guessed at.
"""
import logging
from dataclasses import dataclass
from typing import NoReturn, Optional

from linkpay.addresses import validate_recipient
from linkpay.errors import (
    Conflict,
    GatewayError,
    GatewayFailure,
    LinkError,
    LinkNotDeposited,
    LinkNotFound,
    ReconciliationRequired,
    ValidationError,
)
from linkpay.fees import FeeEstimate, FeeSchedule, compute_fee, estimate_fee
from linkpay.models import AssetType, LedgerKind, LedgerStatus
from linkpay.store import LinkStore, PaymentLinkRecord
from linkpay.withdrawal_gateway import WithdrawalGateway, WithdrawalResult

logger = logging.getLogger(__name__)

SUPPORT_MESSAGE = "Claim failed, contact support with link id {link_id}"


@dataclass(slots=True)
class ClaimReceipt:
    link_id: str
    withdraw_ref: str
    net_amount: int
    fee: int
    is_partial: bool
    recipient_address: str


@dataclass
class ClaimOrchestrator:
    store: LinkStore
    gateway: WithdrawalGateway
    fee_schedule: Optional[FeeSchedule] = None

    def quote(self, link_id: str) -> FeeEstimate:
        link = self._load(link_id)
        return estimate_fee(link.gross_amount, self.fee_schedule)

    def claim_link(self, link_id: str, recipient_address: str) -> ClaimReceipt:
        link = self._load(link_id)
        try:
            validate_recipient(recipient_address, link.asset_type)
            self._check_claimable(link)
            # Raises AmountTooLow before anything is locked or paid
            compute_fee(link.gross_amount, self.fee_schedule)
        except LinkError as exc:
            exc.link_id = link_id
            raise

        if not self.store.conditional_claim(link_id, recipient_address):
            logger.info("Claim on link %s rejected: already claimed", link_id)
            raise Conflict("Link already claimed", link_id=link_id)
        logger.info("Claim lock taken on link %s for %s", link_id, recipient_address)

        try:
            result = self.gateway.withdraw(link.gross_amount, recipient_address)
        except GatewayError as exc:
            exc.link_id = link_id
            if exc.reason == GatewayFailure.UNCONFIRMED:
                # The relayer may have paid out; releasing the lock could pay twice
                self._freeze(link_id, f"Withdrawal outcome unknown: {exc.message}", cause=exc)
            self._compensate(link, recipient_address, exc)
            raise
        except Exception as exc:
            error = GatewayError(f"Withdrawal failed: {exc}", link_id=link_id)
            self._compensate(link, recipient_address, error)
            raise error from exc

        return self._finalize(link, recipient_address, result)

    def _load(self, link_id: str) -> PaymentLinkRecord:
        link = self.store.get_link(link_id)
        if link is None:
            raise LinkNotFound("Link not found", link_id=link_id)
        return link

    @staticmethod
    def _check_claimable(link: PaymentLinkRecord) -> None:
        if link.reconciliation_required:
            raise ReconciliationRequired(SUPPORT_MESSAGE.format(link_id=link.id), link_id=link.id)
        if link.claimed:
            raise Conflict("Link already claimed", link_id=link.id)
        if link.asset_type != AssetType.SOL.value:
            # The relayer only pays out lamports
            raise ValidationError(f"{link.asset_type} links cannot be withdrawn", link_id=link.id)
        if link.deposit_ref is None:
            raise LinkNotDeposited("Link has no confirmed deposit", link_id=link.id)

    def _finalize(self, link: PaymentLinkRecord, recipient_address: str, result: WithdrawalResult) -> ClaimReceipt:
        try:
            self.store.finalize_withdrawal(
                link.id,
                result.tx_ref,
                amount=result.net_amount_delivered,
                fee=result.fee_charged,
                recipient_address=recipient_address,
                detail="partial fulfilment" if result.is_partial else None,
            )
        except LinkError as exc:
            # Funds have left the pool; releasing the lock here would allow a second payout
            self._freeze(
                link.id,
                f"Withdrawal {result.tx_ref} succeeded but could not be recorded: {exc.message}",
                cause=exc,
                external_ref=result.tx_ref,
            )

        if result.is_partial:
            logger.warning(
                "Link %s claimed with partial fulfilment: %s of %s delivered",
                link.id,
                result.net_amount_delivered,
                link.gross_amount,
            )
        else:
            logger.info("Link %s claimed: tx=%s", link.id, result.tx_ref)

        return ClaimReceipt(
            link_id=link.id,
            withdraw_ref=result.tx_ref,
            net_amount=result.net_amount_delivered,
            fee=result.fee_charged,
            is_partial=result.is_partial,
            recipient_address=recipient_address,
        )

    def _compensate(self, link: PaymentLinkRecord, recipient_address: str, error: GatewayError) -> None:
        try:
            self.store.append_ledger_entry(
                link.id,
                LedgerKind.WITHDRAW,
                LedgerStatus.FAILED,
                link.gross_amount,
                counterparty_address=recipient_address,
                detail=f"{error.reason.value}: {error.message}",
            )
            released = self.store.rollback_claim(link.id)
        except LinkError as exc:
            self._freeze(
                link.id,
                f"Rollback after failed withdrawal ({error.reason.value}) did not complete: {exc.message}",
                cause=exc,
            )

        if not released:
            self._freeze(
                link.id,
                f"Rollback after failed withdrawal ({error.reason.value}) matched no claim",
                cause=error,
            )

        logger.warning(
            "Withdrawal for link %s failed (%s); claim rolled back",
            link.id,
            error.reason.value,
        )

    def _freeze(self, link_id: str, reason: str, cause: Exception, external_ref: str | None = None) -> NoReturn:
        logger.critical("Link %s needs manual reconciliation: %s", link_id, reason)
        try:
            self.store.mark_reconciliation_required(link_id, reason, external_ref=external_ref)
        except LinkError:
            logger.critical(
                "Could not persist reconciliation flag for link %s; it stays locked",
                link_id,
                exc_info=True,
            )
        raise ReconciliationRequired(SUPPORT_MESSAGE.format(link_id=link_id), link_id=link_id) from cause
