"""Link store: payment links plus the append-only ledger.

``LinkStore`` is the contract the claim orchestrator and the HTTP layer depend
on. ``SqlLinkStore`` implements it on SQLAlchemy. Each method is one short
transaction; nothing here holds a lock across calls, so the claim flag itself
is the only thing that serialises work on a link.
"""
from __future__ import annotations

import logging
import secrets
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional, Protocol, Sequence

from sqlalchemy import desc, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from linkpay.database import SessionLocal
from linkpay.errors import Conflict, LinkNotFound, StoreError, ValidationError
from linkpay.models import (
    AssetType,
    LedgerEntry,
    LedgerKind,
    LedgerStatus,
    LinkState,
    PaymentLink,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PaymentLinkRecord:
    id: str
    gross_amount: int
    asset_type: str
    creator_address: Optional[str]
    deposit_ref: Optional[str]
    claimed: bool
    claimed_by: Optional[str]
    withdraw_ref: Optional[str]
    reconciliation_required: bool
    reconciliation_reason: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @property
    def state(self) -> LinkState:
        if self.reconciliation_required:
            return LinkState.CLAIM_FAILED
        if self.withdraw_ref is not None:
            return LinkState.CLAIMED
        if self.claimed:
            return LinkState.CLAIMING
        if self.deposit_ref is not None:
            return LinkState.DEPOSITED
        return LinkState.CREATED


@dataclass(slots=True)
class LedgerEntryRecord:
    id: str
    link_id: str
    kind: str
    status: str
    amount: int
    fee: Optional[int]
    counterparty_address: Optional[str]
    external_ref: Optional[str]
    detail: Optional[str]
    created_at: Optional[datetime]


class LinkStore(Protocol):
    def create_link(
        self,
        gross_amount: int,
        asset_type: AssetType | str,
        creator_address: str | None = None,
    ) -> PaymentLinkRecord:
        ...

    def get_link(self, link_id: str) -> PaymentLinkRecord | None:
        ...

    def list_links(self, limit: int = 50, offset: int = 0) -> list[PaymentLinkRecord]:
        ...

    def list_links_by_creator(self, address: str) -> list[PaymentLinkRecord]:
        ...

    def list_frozen_links(self) -> list[PaymentLinkRecord]:
        ...

    def record_deposit(
        self,
        link_id: str,
        deposit_ref: str,
        gross_amount: int,
        depositor_address: str | None = None,
    ) -> PaymentLinkRecord:
        ...

    def conditional_claim(self, link_id: str, recipient_address: str) -> bool:
        ...

    def finalize_withdrawal(
        self,
        link_id: str,
        withdraw_ref: str,
        *,
        amount: int,
        fee: int | None,
        recipient_address: str,
        detail: str | None = None,
    ) -> PaymentLinkRecord:
        ...

    def rollback_claim(self, link_id: str) -> bool:
        ...

    def append_ledger_entry(
        self,
        link_id: str,
        kind: LedgerKind,
        status: LedgerStatus,
        amount: int,
        *,
        fee: int | None = None,
        counterparty_address: str | None = None,
        external_ref: str | None = None,
        detail: str | None = None,
    ) -> LedgerEntryRecord:
        ...

    def mark_reconciliation_required(
        self,
        link_id: str,
        reason: str,
        *,
        external_ref: str | None = None,
    ) -> PaymentLinkRecord:
        ...

    def resolve_reconciliation(
        self,
        link_id: str,
        *,
        withdraw_ref: str | None = None,
        note: str | None = None,
    ) -> PaymentLinkRecord:
        ...

    def list_ledger_entries(self, link_id: str) -> Sequence[LedgerEntryRecord]:
        ...

    def list_entries_for_address(self, address: str) -> Sequence[LedgerEntryRecord]:
        ...


def generate_link_id() -> str:
    return secrets.token_hex(16)


class SqlLinkStore:
    def __init__(self, session_factory=SessionLocal) -> None:
        self.session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreError(f"Link store unavailable: {exc.__class__.__name__}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -- links -------------------------------------------------------------

    def create_link(self, gross_amount, asset_type, creator_address=None) -> PaymentLinkRecord:
        if gross_amount <= 0:
            raise ValidationError("Amount must be a positive integer in base units")
        try:
            asset = AssetType(asset_type)
        except ValueError:
            valid = ", ".join(a.value for a in AssetType)
            raise ValidationError(f"Asset must be one of: {valid}") from None

        with self._transaction() as session:
            link = PaymentLink(
                id=generate_link_id(),
                gross_amount=gross_amount,
                asset_type=asset.value,
                creator_address=creator_address,
                claimed=False,
                reconciliation_required=False,
            )
            session.add(link)
            session.flush()
            session.refresh(link)
            record = self._to_link(link)

        logger.info("Created payment link %s for %s %s", record.id, gross_amount, asset.value)
        return record

    def get_link(self, link_id) -> PaymentLinkRecord | None:
        with self._transaction() as session:
            link = session.get(PaymentLink, link_id)
            return self._to_link(link) if link else None

    def list_links(self, limit=50, offset=0) -> list[PaymentLinkRecord]:
        stmt = (
            select(PaymentLink)
            .order_by(desc(PaymentLink.created_at), PaymentLink.id)
            .offset(offset)
            .limit(limit)
        )
        with self._transaction() as session:
            return [self._to_link(row) for row in session.execute(stmt).scalars()]

    def list_links_by_creator(self, address) -> list[PaymentLinkRecord]:
        stmt = (
            select(PaymentLink)
            .where(PaymentLink.creator_address == address)
            .order_by(desc(PaymentLink.created_at), PaymentLink.id)
        )
        with self._transaction() as session:
            return [self._to_link(row) for row in session.execute(stmt).scalars()]

    def list_frozen_links(self) -> list[PaymentLinkRecord]:
        stmt = (
            select(PaymentLink)
            .where(PaymentLink.reconciliation_required.is_(True))
            .order_by(PaymentLink.updated_at)
        )
        with self._transaction() as session:
            return [self._to_link(row) for row in session.execute(stmt).scalars()]

    def record_deposit(self, link_id, deposit_ref, gross_amount, depositor_address=None) -> PaymentLinkRecord:
        if not deposit_ref:
            raise ValidationError("Deposit reference required", link_id=link_id)
        if gross_amount <= 0:
            raise ValidationError("Deposit amount must be positive", link_id=link_id)

        with self._transaction() as session:
            # gross_amount becomes immutable together with deposit_ref
            result = session.execute(
                update(PaymentLink)
                .where(PaymentLink.id == link_id, PaymentLink.deposit_ref.is_(None))
                .values(deposit_ref=deposit_ref, gross_amount=gross_amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                link = session.get(PaymentLink, link_id)
                if link is None:
                    raise LinkNotFound("Link not found", link_id=link_id)
                if link.deposit_ref == deposit_ref and link.gross_amount == gross_amount:
                    logger.info("Deposit %s for link %s already recorded", deposit_ref, link_id)
                    return self._to_link(link)
                raise Conflict("A different deposit is already recorded for this link", link_id=link_id)

            session.add(
                LedgerEntry(
                    link_id=link_id,
                    kind=LedgerKind.DEPOSIT.value,
                    status=LedgerStatus.CONFIRMED.value,
                    amount=gross_amount,
                    counterparty_address=depositor_address,
                    external_ref=deposit_ref,
                )
            )
            session.flush()
            record = self._to_link(session.get(PaymentLink, link_id))

        logger.info("Recorded deposit %s for link %s (%s)", deposit_ref, link_id, gross_amount)
        return record

    # -- claim protocol primitives ----------------------------------------

    def conditional_claim(self, link_id, recipient_address) -> bool:
        stmt = (
            update(PaymentLink)
            .where(
                PaymentLink.id == link_id,
                PaymentLink.claimed.is_(False),
                PaymentLink.deposit_ref.is_not(None),
                PaymentLink.reconciliation_required.is_(False),
            )
            .values(claimed=True, claimed_by=recipient_address)
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as session:
            return session.execute(stmt).rowcount == 1

    def finalize_withdrawal(self, link_id, withdraw_ref, *, amount, fee, recipient_address, detail=None) -> PaymentLinkRecord:
        with self._transaction() as session:
            result = session.execute(
                update(PaymentLink)
                .where(
                    PaymentLink.id == link_id,
                    PaymentLink.claimed.is_(True),
                    PaymentLink.withdraw_ref.is_(None),
                )
                .values(withdraw_ref=withdraw_ref)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise Conflict("Link is not awaiting a withdrawal result", link_id=link_id)
            session.add(
                LedgerEntry(
                    link_id=link_id,
                    kind=LedgerKind.WITHDRAW.value,
                    status=LedgerStatus.CONFIRMED.value,
                    amount=amount,
                    fee=fee,
                    counterparty_address=recipient_address,
                    external_ref=withdraw_ref,
                    detail=detail,
                )
            )
            session.flush()
            return self._to_link(session.get(PaymentLink, link_id))

    def rollback_claim(self, link_id) -> bool:
        stmt = (
            update(PaymentLink)
            .where(
                PaymentLink.id == link_id,
                PaymentLink.claimed.is_(True),
                PaymentLink.withdraw_ref.is_(None),
                PaymentLink.reconciliation_required.is_(False),
            )
            .values(claimed=False, claimed_by=None)
            .execution_options(synchronize_session=False)
        )
        with self._transaction() as session:
            return session.execute(stmt).rowcount == 1

    # -- ledger ------------------------------------------------------------

    def append_ledger_entry(
        self,
        link_id,
        kind,
        status,
        amount,
        *,
        fee=None,
        counterparty_address=None,
        external_ref=None,
        detail=None,
    ) -> LedgerEntryRecord:
        with self._transaction() as session:
            entry = LedgerEntry(
                link_id=link_id,
                kind=LedgerKind(kind).value,
                status=LedgerStatus(status).value,
                amount=amount,
                fee=fee,
                counterparty_address=counterparty_address,
                external_ref=external_ref,
                detail=detail,
            )
            session.add(entry)
            session.flush()
            session.refresh(entry)
            return self._to_entry(entry)

    def list_ledger_entries(self, link_id) -> list[LedgerEntryRecord]:
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.link_id == link_id)
            .order_by(LedgerEntry.created_at, LedgerEntry.id)
        )
        with self._transaction() as session:
            return [self._to_entry(row) for row in session.execute(stmt).scalars()]

    def list_entries_for_address(self, address) -> list[LedgerEntryRecord]:
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.counterparty_address == address)
            .order_by(desc(LedgerEntry.created_at), LedgerEntry.id)
        )
        with self._transaction() as session:
            return [self._to_entry(row) for row in session.execute(stmt).scalars()]

    # -- reconciliation ----------------------------------------------------

    def mark_reconciliation_required(self, link_id, reason, *, external_ref=None) -> PaymentLinkRecord:
        with self._transaction() as session:
            link = session.get(PaymentLink, link_id)
            if link is None:
                raise LinkNotFound("Link not found", link_id=link_id)
            link.reconciliation_required = True
            link.reconciliation_reason = reason
            session.add(
                LedgerEntry(
                    link_id=link_id,
                    kind=LedgerKind.RECONCILIATION.value,
                    status=LedgerStatus.PENDING.value,
                    amount=link.gross_amount,
                    counterparty_address=link.claimed_by,
                    external_ref=external_ref or link.withdraw_ref,
                    detail=reason,
                )
            )
            session.flush()
            session.refresh(link)
            return self._to_link(link)

    def resolve_reconciliation(self, link_id, *, withdraw_ref=None, note=None) -> PaymentLinkRecord:
        with self._transaction() as session:
            link = session.get(PaymentLink, link_id)
            if link is None:
                raise LinkNotFound("Link not found", link_id=link_id)
            if not link.reconciliation_required:
                raise Conflict("Link is not awaiting reconciliation", link_id=link_id)

            recipient = link.claimed_by
            if withdraw_ref:
                values = dict(reconciliation_required=False, claimed=True, withdraw_ref=withdraw_ref)
                status = LedgerStatus.CONFIRMED
            else:
                values = dict(reconciliation_required=False, claimed=False, claimed_by=None)
                status = LedgerStatus.FAILED

            result = session.execute(
                update(PaymentLink)
                .where(PaymentLink.id == link_id, PaymentLink.reconciliation_required.is_(True))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise Conflict("Link was reconciled concurrently", link_id=link_id)

            session.add(
                LedgerEntry(
                    link_id=link_id,
                    kind=LedgerKind.RECONCILIATION.value,
                    status=status.value,
                    amount=link.gross_amount,
                    counterparty_address=recipient,
                    external_ref=withdraw_ref,
                    detail=note,
                )
            )
            session.flush()
            session.expire(link)
            record = self._to_link(session.get(PaymentLink, link_id))

        logger.warning(
            "Link %s reconciled by operator: %s",
            link_id,
            "payout confirmed" if withdraw_ref else "claim released",
        )
        return record

    @staticmethod
    def _to_link(model: PaymentLink) -> PaymentLinkRecord:
        return PaymentLinkRecord(
            id=model.id,
            gross_amount=model.gross_amount,
            asset_type=model.asset_type,
            creator_address=model.creator_address,
            deposit_ref=model.deposit_ref,
            claimed=bool(model.claimed),
            claimed_by=model.claimed_by,
            withdraw_ref=model.withdraw_ref,
            reconciliation_required=bool(model.reconciliation_required),
            reconciliation_reason=model.reconciliation_reason,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _to_entry(model: LedgerEntry) -> LedgerEntryRecord:
        return LedgerEntryRecord(
            id=model.id,
            link_id=model.link_id,
            kind=model.kind,
            status=model.status,
            amount=model.amount,
            fee=model.fee,
            counterparty_address=model.counterparty_address,
            external_ref=model.external_ref,
            detail=model.detail,
            created_at=model.created_at,
        )
