# ruff: noqa: B008

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from settlement import models
from settlement.api.deps import get_db
from settlement.core.observability import request_id_from
from settlement.schemas import (
    ApprovalRead,
    CashObligationCreate,
    InvoiceObligationCreate,
    ObligationApprove,
    ObligationRead,
    ObligationReject,
)
from settlement.services import obligation_creation, obligation_state

router = APIRouter(prefix="/obligations", tags=["obligations"])


def _get_payee(db: Session, payee_id: int) -> models.Payee:
    payee = db.get(models.Payee, payee_id)
    if not payee:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payee not found")
    return payee


def _get_obligation(db: Session, obligation_id: int) -> models.Obligation:
    obligation = db.get(models.Obligation, obligation_id)
    if not obligation:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Obligation not found")
    return obligation


@router.post("/invoices", response_model=ObligationRead, status_code=status.HTTP_201_CREATED)
def create_invoice(payload: InvoiceObligationCreate, request: Request, db: Session = Depends(get_db)):
    payee = _get_payee(db, payload.payee_id)
    return obligation_creation.create_invoice_obligation(
        db,
        payee=payee,
        gross_cents=payload.gross_amount_cents,
        invoice_date=payload.invoice_date,
        share_price_cents=payload.share_price_cents,
        request_id=request_id_from(request),
    )


@router.post("/dividends", response_model=ObligationRead, status_code=status.HTTP_201_CREATED)
def create_dividend(payload: CashObligationCreate, request: Request, db: Session = Depends(get_db)):
    payee = _get_payee(db, payload.payee_id)
    return obligation_creation.create_dividend_obligation(
        db,
        payee=payee,
        gross_cents=payload.gross_amount_cents,
        issued_on=payload.issued_on,
        request_id=request_id_from(request),
    )


@router.post("/buybacks", response_model=ObligationRead, status_code=status.HTTP_201_CREATED)
def create_buyback(payload: CashObligationCreate, request: Request, db: Session = Depends(get_db)):
    payee = _get_payee(db, payload.payee_id)
    return obligation_creation.create_buyback_obligation(
        db,
        payee=payee,
        gross_cents=payload.gross_amount_cents,
        issued_on=payload.issued_on,
        request_id=request_id_from(request),
    )


@router.get("/{obligation_id}", response_model=ObligationRead)
def get_obligation(obligation_id: int, db: Session = Depends(get_db)):
    return _get_obligation(db, obligation_id)


@router.post("/{obligation_id}/approve", response_model=ApprovalRead)
def approve_obligation(
    obligation_id: int,
    payload: ObligationApprove,
    request: Request,
    db: Session = Depends(get_db),
):
    obligation = _get_obligation(db, obligation_id)
    result = obligation_state.approve(
        db, obligation, approver_id=payload.approver_id, request_id=request_id_from(request)
    )
    return ApprovalRead(
        changed=result.changed,
        approval_count=result.approval_count,
        payable=result.payable,
        obligation=ObligationRead.model_validate(obligation),
    )


@router.post("/{obligation_id}/reject", response_model=ObligationRead)
def reject_obligation(
    obligation_id: int,
    payload: ObligationReject,
    request: Request,
    db: Session = Depends(get_db),
):
    obligation = _get_obligation(db, obligation_id)
    return obligation_state.reject(
        db, obligation, reason=payload.reason, request_id=request_id_from(request)
    )
