"""Public, token-authenticated participant approval endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from claimflow.core.dependencies import get_db
from claimflow.schemas.invoice import ApprovalDecisionRequest, ApprovalDecisionResponse, ApprovalStatusOut
from claimflow.services.errors import InvalidFormat, InvalidSignature, TokenAlreadyUsed, TokenExpired
from claimflow.services.participant_approval import (
    get_approval_status,
    process_approval_response,
    record_token_rejection,
)
from claimflow.utils.rate_limit import get_client_ip, get_user_agent

logger = logging.getLogger(__name__)

router = APIRouter()

_TOKEN_ERRORS = (InvalidFormat, InvalidSignature, TokenExpired, TokenAlreadyUsed)


def _audit_rejection(db: Session, request: Request, exc: Exception) -> None:
    db.rollback()
    record_token_rejection(
        db,
        exc.code,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.commit()
    logger.info("Approval token rejected: %s", exc.code)


@router.get("/public/invoice-approval/{token}", response_model=ApprovalStatusOut)
async def get_invoice_approval(token: str, request: Request, db: Session = Depends(get_db)):
    try:
        return get_approval_status(db, token)
    except _TOKEN_ERRORS as exc:
        _audit_rejection(db, request, exc)
        raise


@router.post("/public/invoice-approval/{token}", response_model=ApprovalDecisionResponse)
async def respond_to_invoice_approval(
    token: str,
    payload: ApprovalDecisionRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    try:
        invoice = process_approval_response(
            db,
            token,
            payload.decision,
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
        )
    except _TOKEN_ERRORS as exc:
        _audit_rejection(db, request, exc)
        raise
    db.commit()
    return ApprovalDecisionResponse(invoice_id=str(invoice.id), decision=payload.decision, status=invoice.status)
