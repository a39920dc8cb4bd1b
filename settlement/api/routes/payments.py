# ruff: noqa: B008

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from settlement import models
from settlement.api.deps import get_db, get_transfer_provider
from settlement.core.observability import request_id_from
from settlement.schemas import PaymentCreate, PaymentOutcomeRead, PaymentRead
from settlement.services import payment_executor
from settlement.services.transfer_provider import TransferProviderClient

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("", response_model=PaymentOutcomeRead)
def create_payment(
    payload: PaymentCreate,
    request: Request,
    db: Session = Depends(get_db),
    provider: TransferProviderClient = Depends(get_transfer_provider),
):
    outcome = payment_executor.execute_payment(
        db,
        obligation_ids=payload.obligation_ids,
        provider=provider,
        request_id=request_id_from(request),
    )
    return PaymentOutcomeRead(
        status=outcome.status,
        reason_code=outcome.reason_code,
        obligation_ids=list(outcome.obligation_ids),
        payment=PaymentRead.model_validate(outcome.payment) if outcome.payment else None,
    )


@router.get("/{payment_id}", response_model=PaymentRead)
def get_payment(payment_id: int, db: Session = Depends(get_db)):
    payment = db.get(models.Payment, payment_id)
    if not payment:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    return payment
