from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from claimflow.core.auth import MANAGER_ROLES, STAFF_ROLES, CurrentUser, require_roles
from claimflow.core.dependencies import get_db
from claimflow.models.invoice import Invoice
from claimflow.schemas.invoice import (
    ApprovalRequestResponse,
    BulkAction,
    BulkActionRequest,
    BulkResult,
    InvoiceCreate,
    InvoiceLineOut,
    InvoiceListResponse,
    InvoiceOut,
    InvoiceRejectRequest,
    InvoiceStatus,
)
from claimflow.services.claim_service import create_claim_from_invoice, run_bulk
from claimflow.services.errors import ValidationFailed
from claimflow.services.invoice_service import (
    approve_invoice,
    create_manual_invoice,
    get_invoice,
    list_invoices,
    reject_invoice,
)
from claimflow.services.participant_approval import request_participant_approval
from claimflow.services.transition_service import Actor
from claimflow.utils.rate_limit import get_client_ip, get_user_agent

logger = logging.getLogger(__name__)

router = APIRouter()


def _build_actor(current_user: CurrentUser, request: Request) -> Actor:
    return Actor(
        actor_type=current_user.role,
        actor_id=current_user.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )


def _id(value) -> Optional[str]:
    return str(value) if value is not None else None


def invoice_to_out(invoice: Invoice) -> InvoiceOut:
    return InvoiceOut(
        id=str(invoice.id),
        participant_id=_id(invoice.participant_id),
        provider_id=_id(invoice.provider_id),
        plan_id=_id(invoice.plan_id),
        budget_line_id=_id(invoice.budget_line_id),
        invoice_number=invoice.invoice_number,
        invoice_date=invoice.invoice_date,
        subtotal_cents=int(invoice.subtotal_cents or 0),
        gst_cents=int(invoice.gst_cents or 0),
        total_cents=int(invoice.total_cents or 0),
        status=invoice.status,
        ingest_source=invoice.ingest_source,
        source_email=invoice.source_email,
        storage_bucket=invoice.storage_bucket,
        storage_path=invoice.storage_path,
        ocr_job_id=invoice.ocr_job_id,
        ai_confidence=invoice.ai_confidence,
        ai_extracted_at=invoice.ai_extracted_at,
        ai_raw_data=invoice.ai_raw_data,
        approved_by_id=invoice.approved_by_id,
        approved_at=invoice.approved_at,
        rejected_by_id=invoice.rejected_by_id,
        rejected_at=invoice.rejected_at,
        rejection_reason=invoice.rejection_reason,
        participant_approval_status=invoice.participant_approval_status,
        approval_method=invoice.approval_method,
        approval_token_expires_at=invoice.approval_token_expires_at,
        approval_sent_at=invoice.approval_sent_at,
        participant_approved_at=invoice.participant_approved_at,
        approval_skipped_at=invoice.approval_skipped_at,
        status_changed_at=invoice.status_changed_at,
        row_version=int(invoice.row_version or 0),
        created_at=invoice.created_at,
        updated_at=invoice.updated_at,
        lines=[
            InvoiceLineOut(
                id=str(line.id),
                line_no=line.line_no,
                support_item_code=line.support_item_code,
                support_item_name=line.support_item_name,
                category_code=line.category_code,
                service_date=line.service_date,
                quantity=float(line.quantity),
                unit_price_cents=int(line.unit_price_cents),
                total_cents=int(line.total_cents),
                gst_cents=int(line.gst_cents or 0),
            )
            for line in invoice.lines
        ],
    )


@router.post("/invoices", response_model=InvoiceOut, status_code=201)
async def create_invoice(
    payload: InvoiceCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
):
    invoice = create_manual_invoice(db, payload, _build_actor(current_user, request))
    db.commit()
    db.refresh(invoice)
    return invoice_to_out(invoice)


@router.get("/invoices", response_model=InvoiceListResponse)
async def list_invoices_endpoint(
    status: Optional[InvoiceStatus] = Query(None),
    participant_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
):
    items, total = list_invoices(db, status=status, participant_id=participant_id, limit=limit, offset=offset)
    return InvoiceListResponse(items=[invoice_to_out(item) for item in items], total=total)


@router.get("/invoices/{invoice_id}", response_model=InvoiceOut)
async def get_invoice_endpoint(
    invoice_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
):
    return invoice_to_out(get_invoice(db, invoice_id))


@router.post("/invoices/{invoice_id}/approve", response_model=InvoiceOut)
async def approve_invoice_endpoint(
    invoice_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*MANAGER_ROLES)),
):
    invoice = approve_invoice(db, invoice_id, _build_actor(current_user, request))
    db.commit()
    db.refresh(invoice)
    return invoice_to_out(invoice)


@router.post("/invoices/{invoice_id}/reject", response_model=InvoiceOut)
async def reject_invoice_endpoint(
    invoice_id: str,
    payload: InvoiceRejectRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*MANAGER_ROLES)),
):
    invoice = reject_invoice(db, invoice_id, _build_actor(current_user, request), payload.reason)
    db.commit()
    db.refresh(invoice)
    return invoice_to_out(invoice)


@router.post("/invoices/{invoice_id}/request-approval", response_model=ApprovalRequestResponse)
async def request_approval_endpoint(
    invoice_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*MANAGER_ROLES)),
):
    result = request_participant_approval(db, invoice_id, _build_actor(current_user, request))
    db.commit()
    return ApprovalRequestResponse(
        invoice_id=str(result.invoice.id),
        status=result.invoice.status,
        approval_method=result.invoice.approval_method,
        approval_token_expires_at=result.expires_at,
        token=result.token,
        approval_url=result.approval_url,
    )


@router.post("/invoices/bulk", response_model=BulkResult)
async def bulk_invoice_action(
    payload: BulkActionRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*MANAGER_ROLES)),
):
    actor = _build_actor(current_user, request)
    reason = (payload.reason or "").strip()
    if payload.action == BulkAction.REJECT and not reason:
        raise ValidationFailed("A rejection reason is required for bulk reject")

    operations = {
        BulkAction.APPROVE: lambda session, item_id: approve_invoice(session, item_id, actor),
        BulkAction.REJECT: lambda session, item_id: reject_invoice(session, item_id, actor, reason),
        BulkAction.REQUEST_APPROVAL: lambda session, item_id: request_participant_approval(session, item_id, actor),
        BulkAction.CLAIM: lambda session, item_id: create_claim_from_invoice(session, item_id, actor),
    }
    result = run_bulk(db, payload.invoice_ids, operations[payload.action])
    logger.info(
        "Bulk %s by %s: succeeded=%s failed=%s",
        payload.action.value,
        current_user.id,
        len(result["succeeded"]),
        len(result["failed"]),
    )
    return result
