# ruff: noqa: B008

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from settlement import models
from settlement.api.deps import get_db, get_lock_manager
from settlement.core.observability import request_id_from
from settlement.schemas import BatchCreate, BatchMarkPaid, BatchRead, BatchRunResponse
from settlement.services import batch_aggregator
from settlement.services.lock_manager import LockManager

router = APIRouter(tags=["batches"])


def _get_batch(db: Session, batch_id: int) -> models.Batch:
    batch = db.get(models.Batch, batch_id)
    if not batch:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
    return batch


@router.post("/companies/{company_id}/batches", response_model=BatchRunResponse)
def run_aggregation(
    company_id: int,
    request: Request,
    payload: BatchCreate | None = None,
    db: Session = Depends(get_db),
    lock_manager: LockManager = Depends(get_lock_manager),
):
    payload = payload or BatchCreate()
    batch = batch_aggregator.aggregate_company_batch(
        db,
        company_id=company_id,
        lock_manager=lock_manager,
        obligation_ids=payload.obligation_ids,
        invoice_date=payload.invoice_date,
        request_id=request_id_from(request),
    )
    return BatchRunResponse(batch=BatchRead.model_validate(batch) if batch else None)


@router.get("/batches/{batch_id}", response_model=BatchRead)
def get_batch(batch_id: int, db: Session = Depends(get_db)):
    return _get_batch(db, batch_id)


@router.post("/batches/{batch_id}/mark-paid", response_model=BatchRead)
def mark_paid(
    batch_id: int,
    request: Request,
    payload: BatchMarkPaid | None = None,
    db: Session = Depends(get_db),
):
    batch = _get_batch(db, batch_id)
    return batch_aggregator.mark_batch_paid(
        db,
        batch,
        paid_at=payload.paid_at if payload else None,
        request_id=request_id_from(request),
    )


@router.post("/batches/{batch_id}/mark-failed", response_model=BatchRead)
def mark_failed(batch_id: int, request: Request, db: Session = Depends(get_db)):
    batch = _get_batch(db, batch_id)
    return batch_aggregator.mark_batch_failed(db, batch, request_id=request_id_from(request))
