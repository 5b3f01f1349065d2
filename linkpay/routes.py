from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from linkpay import config
from linkpay.addresses import is_valid_solana_address
from linkpay.auth import verify_token
from linkpay.claims import ClaimOrchestrator
from linkpay.database import SessionLocal
from linkpay.errors import ErrorKind, LinkNotFound, ValidationError
from linkpay.fees import FeeEstimate, FeeSchedule, estimate_fee
from linkpay.models import AssetType
from linkpay.store import LedgerEntryRecord, LinkStore, PaymentLinkRecord, SqlLinkStore
from linkpay.withdrawal_gateway import get_withdrawal_gateway

router = APIRouter()

ERROR_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.AMOUNT_TOO_LOW: 422,
    ErrorKind.GATEWAY: 502,
    ErrorKind.RECONCILIATION_REQUIRED: 500,
    ErrorKind.STORE: 503,
}


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateLinkRequest(CamelModel):
    gross_amount: int = Field(gt=0)
    asset_type: AssetType = AssetType.SOL
    creator_address: Optional[str] = None


class DepositRequest(CamelModel):
    deposit_ref: str = Field(min_length=1)
    gross_amount: int = Field(gt=0)
    depositor_address: Optional[str] = None


class ClaimRequest(CamelModel):
    recipient_address: str


class ReconcileRequest(CamelModel):
    withdraw_ref: Optional[str] = None
    note: Optional[str] = None


class LinkResponse(CamelModel):
    link_id: str
    gross_amount: int
    asset_type: str
    state: str
    claimed: bool
    claimed_by: Optional[str] = None
    deposit_ref: Optional[str] = None
    withdraw_ref: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CreateLinkResponse(LinkResponse):
    share_url: str


class ClaimResponse(CamelModel):
    link_id: str
    withdraw_ref: str
    net_amount: int
    fee: int
    is_partial: bool
    recipient_address: str


class LedgerEntryResponse(CamelModel):
    id: str
    kind: str
    status: str
    amount: int
    fee: Optional[int] = None
    counterparty_address: Optional[str] = None
    external_ref: Optional[str] = None
    detail: Optional[str] = None
    created_at: Optional[datetime] = None


class FeeEstimateResponse(CamelModel):
    gross_amount: int
    base_fee: int
    protocol_fee: int
    total_fee: int
    net_amount: int
    claimable: bool


class LinkStatusResponse(LinkResponse):
    fee_breakdown: FeeEstimateResponse
    transactions: List[LedgerEntryResponse]


class FrozenLinkResponse(LinkResponse):
    reconciliation_reason: Optional[str] = None


class HistoryResponse(CamelModel):
    address: str
    sent: List[LinkResponse]
    transactions: List[LedgerEntryResponse]


def get_link_store() -> LinkStore:
    return SqlLinkStore(SessionLocal)


def get_claim_orchestrator(
    store: LinkStore = Depends(get_link_store),
    gateway=Depends(get_withdrawal_gateway),
) -> ClaimOrchestrator:
    return ClaimOrchestrator(store=store, gateway=gateway, fee_schedule=FeeSchedule.from_env())


def _link_fields(link: PaymentLinkRecord) -> dict:
    return dict(
        link_id=link.id,
        gross_amount=link.gross_amount,
        asset_type=link.asset_type,
        state=link.state.value,
        claimed=link.claimed,
        claimed_by=link.claimed_by,
        deposit_ref=link.deposit_ref,
        withdraw_ref=link.withdraw_ref,
        created_at=link.created_at,
        updated_at=link.updated_at,
    )


def _entry_response(entry: LedgerEntryRecord) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        kind=entry.kind,
        status=entry.status,
        amount=entry.amount,
        fee=entry.fee,
        counterparty_address=entry.counterparty_address,
        external_ref=entry.external_ref,
        detail=entry.detail,
        created_at=entry.created_at,
    )


def _fee_response(estimate: FeeEstimate) -> FeeEstimateResponse:
    return FeeEstimateResponse(
        gross_amount=estimate.gross_amount,
        base_fee=estimate.base_fee,
        protocol_fee=estimate.protocol_fee,
        total_fee=estimate.total_fee,
        net_amount=estimate.net_amount,
        claimable=estimate.claimable,
    )


def _require_link(store: LinkStore, link_id: str) -> PaymentLinkRecord:
    link = store.get_link(link_id)
    if link is None:
        raise LinkNotFound("Link not found", link_id=link_id)
    return link


@router.post("/links", status_code=201, response_model=CreateLinkResponse)
def create_link(request: CreateLinkRequest, store: LinkStore = Depends(get_link_store)):
    if request.creator_address and not is_valid_solana_address(request.creator_address):
        raise ValidationError("Invalid creator address")

    link = store.create_link(request.gross_amount, request.asset_type, request.creator_address)
    return CreateLinkResponse(
        **_link_fields(link),
        share_url=f"{config.share_url_base()}?link={link.id}",
    )


@router.get("/links", response_model=List[LinkResponse])
def list_links(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    store: LinkStore = Depends(get_link_store),
):
    return [LinkResponse(**_link_fields(link)) for link in store.list_links(limit, offset)]


@router.get("/links/{link_id}", response_model=LinkResponse)
def get_link(link_id: str, store: LinkStore = Depends(get_link_store)):
    return LinkResponse(**_link_fields(_require_link(store, link_id)))


@router.get("/links/{link_id}/status", response_model=LinkStatusResponse)
def link_status(link_id: str, orchestrator: ClaimOrchestrator = Depends(get_claim_orchestrator)):
    store = orchestrator.store
    link = _require_link(store, link_id)
    return LinkStatusResponse(
        **_link_fields(link),
        fee_breakdown=_fee_response(orchestrator.quote(link_id)),
        transactions=[_entry_response(e) for e in store.list_ledger_entries(link_id)],
    )


@router.post("/links/{link_id}/deposit", response_model=LinkResponse)
def record_deposit(link_id: str, request: DepositRequest, store: LinkStore = Depends(get_link_store)):
    if request.depositor_address and not is_valid_solana_address(request.depositor_address):
        raise ValidationError("Invalid depositor address", link_id=link_id)

    link = store.record_deposit(
        link_id,
        request.deposit_ref,
        request.gross_amount,
        request.depositor_address,
    )
    return LinkResponse(**_link_fields(link))


@router.post("/links/{link_id}/claim", response_model=ClaimResponse)
def claim_link(
    link_id: str,
    request: ClaimRequest,
    orchestrator: ClaimOrchestrator = Depends(get_claim_orchestrator),
):
    receipt = orchestrator.claim_link(link_id, request.recipient_address)
    return ClaimResponse(
        link_id=receipt.link_id,
        withdraw_ref=receipt.withdraw_ref,
        net_amount=receipt.net_amount,
        fee=receipt.fee,
        is_partial=receipt.is_partial,
        recipient_address=receipt.recipient_address,
    )


@router.get("/fees/estimate", response_model=FeeEstimateResponse)
def fee_estimate(amount: int = Query(..., gt=0)):
    return _fee_response(estimate_fee(amount, FeeSchedule.from_env()))


@router.get("/history/{address}", response_model=HistoryResponse)
def history(address: str, store: LinkStore = Depends(get_link_store)):
    return HistoryResponse(
        address=address,
        sent=[LinkResponse(**_link_fields(link)) for link in store.list_links_by_creator(address)],
        transactions=[_entry_response(e) for e in store.list_entries_for_address(address)],
    )


@router.get("/health")
def health():
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return JSONResponse(status_code=503, content={"status": "degraded", "database": "unavailable"})
    finally:
        db.close()
    return {"status": "ok", "database": "ok"}


@router.get("/admin/reconciliation", response_model=List[FrozenLinkResponse])
def reconciliation_queue(auth=Depends(verify_token), store: LinkStore = Depends(get_link_store)):
    return [
        FrozenLinkResponse(**_link_fields(link), reconciliation_reason=link.reconciliation_reason)
        for link in store.list_frozen_links()
    ]


@router.post("/admin/links/{link_id}/reconcile", response_model=LinkResponse)
def reconcile_link(
    link_id: str,
    request: ReconcileRequest,
    auth=Depends(verify_token),
    store: LinkStore = Depends(get_link_store),
):
    link = store.resolve_reconciliation(link_id, withdraw_ref=request.withdraw_ref, note=request.note)
    return LinkResponse(**_link_fields(link))
