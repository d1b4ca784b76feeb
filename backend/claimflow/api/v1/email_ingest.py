from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from claimflow.core.auth import bearer_secret_matches
from claimflow.core.config import get_settings
from claimflow.core.dependencies import get_db
from claimflow.core.storage import InvoiceStorage, get_invoice_storage
from claimflow.schemas.ingest import (
    EmailIngestRequest,
    EmailIngestResponse,
    OcrCompleteRequest,
    OcrCompleteResponse,
)
from claimflow.services.email_ingest import complete_extraction, ingest_email
from claimflow.services.extraction.ocr_client import OcrClient, get_ocr_client
from claimflow.services.transition_service import SYSTEM_ACTOR, SYSTEM_ENTITY_ID, create_audit_log
from claimflow.utils.rate_limit import get_client_ip, get_user_agent

logger = logging.getLogger(__name__)

router = APIRouter()


def require_ingest_secret(
    request: Request,
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: Session = Depends(get_db),
) -> None:
    settings = get_settings()
    if not settings.email_ingest_secret:
        raise HTTPException(500, "EMAIL_INGEST_SECRET is not configured")
    if bearer_secret_matches(authorization, settings.email_ingest_secret):
        return

    create_audit_log(
        db,
        entity_type="system",
        entity_id=SYSTEM_ENTITY_ID,
        action="EMAIL_INGEST_AUTH_INVALID",
        old_value=None,
        new_value=None,
        actor_type="SYSTEM",
        actor_id=None,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
        metadata={"path": request.url.path},
    )
    db.commit()
    raise HTTPException(401, "Unauthorized")


@router.post(
    "/email-ingest",
    response_model=EmailIngestResponse,
    dependencies=[Depends(require_ingest_secret)],
)
async def email_ingest(
    payload: EmailIngestRequest,
    db: Session = Depends(get_db),
    storage: InvoiceStorage = Depends(get_invoice_storage),
    ocr: OcrClient = Depends(get_ocr_client),
):
    result = await ingest_email(db, bucket=payload.bucket, key=payload.key, storage=storage, ocr=ocr, actor=SYSTEM_ACTOR)
    db.commit()
    return EmailIngestResponse(
        status=result.status,
        invoice_id=str(result.invoice.id) if result.invoice is not None else None,
    )


@router.post(
    "/email-ingest/ocr-complete",
    response_model=OcrCompleteResponse,
    dependencies=[Depends(require_ingest_secret)],
)
async def ocr_complete(
    payload: OcrCompleteRequest,
    db: Session = Depends(get_db),
    ocr: OcrClient = Depends(get_ocr_client),
):
    # JobPending propagates and is rendered as 202 so the caller retries later.
    result = await complete_extraction(db, job_id=payload.job_id, invoice_id=payload.invoice_id, ocr=ocr)
    db.commit()
    return result
