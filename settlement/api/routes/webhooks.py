# ruff: noqa: B008

import hashlib
import hmac
import json
import time

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from settlement.api.deps import get_db, get_transfer_provider
from settlement.config import settings
from settlement.core.errors import MalformedEventError
from settlement.core.observability import request_id_from
from settlement.schemas import TransferEventAck
from settlement.services.transfer_provider import TransferProviderClient
from settlement.services.transfer_reconciler import TransferEvent, process_transfer_event

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "x-signature"
TIMESTAMP_HEADER = "x-request-timestamp"
MAX_SKEW_SECONDS = 300


def _valid_signature(
    raw_body: bytes, signature_header: str | None, timestamp_header: str | None
) -> bool:
    if not settings.webhook_secret:
        return True
    if not signature_header:
        return False
    try:
        ts = int(timestamp_header) if timestamp_header else None
    except ValueError:
        ts = None

    if ts is not None:
        now = int(time.time())
        if abs(now - ts) > MAX_SKEW_SECONDS:
            return False

    secret = settings.webhook_secret.encode()
    expected = hmac.new(secret, raw_body, hashlib.sha256).hexdigest()
    provided = signature_header.split("=", 1)[-1].strip()
    return hmac.compare_digest(expected, provided)


async def read_raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/transfers", response_model=TransferEventAck, status_code=status.HTTP_200_OK)
def transfer_state_change(
    request: Request,
    raw_body: bytes = Depends(read_raw_body),
    db: Session = Depends(get_db),
    provider: TransferProviderClient = Depends(get_transfer_provider),
    x_signature: str | None = Header(default=None, alias=SIGNATURE_HEADER),
    x_request_timestamp: str | None = Header(default=None, alias=TIMESTAMP_HEADER),
):
    # Runs in the threadpool; the reconciler makes blocking provider calls.
    if not _valid_signature(raw_body, x_signature, x_request_timestamp):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature"
        )

    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError as e:
        raise MalformedEventError("webhook body is not valid JSON") from e

    event = TransferEvent.from_payload(payload)
    result = process_transfer_event(
        db, event, provider=provider, request_id=request_id_from(request)
    )
    return TransferEventAck(
        status="ignored" if result.ignored else "processed",
        payment_id=result.payment_id,
        bucket=result.bucket.value if result.bucket else None,
        transitioned=result.transitioned,
    )
