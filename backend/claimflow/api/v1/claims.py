from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from claimflow.core.auth import MANAGER_ROLES, STAFF_ROLES, CurrentUser, require_roles
from claimflow.core.dependencies import get_db
from claimflow.models.invoice import Claim, ClaimBatch
from claimflow.schemas.claims import (
    BatchCreate,
    BatchOut,
    BatchSubmitRequest,
    ClaimCreate,
    ClaimGenerateRequest,
    ClaimLineOut,
    ClaimListResponse,
    ClaimOut,
    ClaimOutcomeRequest,
    ClaimSubmitRequest,
)
from claimflow.schemas.invoice import BulkResult
from claimflow.services.claim_service import (
    create_batch,
    create_claim_from_invoice,
    generate_claim_batch,
    list_claims_ready_for_payment,
    load_claim,
    record_claim_outcome,
    record_claim_payment,
    submit_batch,
    submit_claim,
)
from claimflow.services.transition_service import Actor
from claimflow.utils.rate_limit import get_client_ip, get_user_agent

router = APIRouter()


def _build_actor(current_user: CurrentUser, request: Request) -> Actor:
    return Actor(
        actor_type=current_user.role,
        actor_id=current_user.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )


def claim_to_out(claim: Claim) -> ClaimOut:
    return ClaimOut(
        id=str(claim.id),
        claim_reference=claim.claim_reference,
        invoice_id=str(claim.invoice_id),
        participant_id=str(claim.participant_id) if claim.participant_id else None,
        batch_id=str(claim.batch_id) if claim.batch_id else None,
        claimed_cents=int(claim.claimed_cents),
        approved_cents=claim.approved_cents,
        status=claim.status,
        payer_reference=claim.payer_reference,
        submitted_at=claim.submitted_at,
        outcome_at=claim.outcome_at,
        outcome_notes=claim.outcome_notes,
        paid_at=claim.paid_at,
        created_at=claim.created_at,
        lines=[
            ClaimLineOut(
                id=str(line.id),
                line_no=line.line_no,
                invoice_line_id=str(line.invoice_line_id) if line.invoice_line_id else None,
                support_item_code=line.support_item_code,
                support_item_name=line.support_item_name,
                category_code=line.category_code,
                service_date=line.service_date,
                quantity=float(line.quantity),
                unit_price_cents=int(line.unit_price_cents),
                total_cents=int(line.total_cents),
                gst_cents=int(line.gst_cents or 0),
                status=line.status,
                approved_cents=line.approved_cents,
                outcome_notes=line.outcome_notes,
            )
            for line in claim.lines
        ],
    )


def batch_to_out(batch: ClaimBatch) -> BatchOut:
    return BatchOut(
        id=str(batch.id),
        batch_number=batch.batch_number,
        status=batch.status,
        claim_count=batch.claim_count,
        total_cents=int(batch.total_cents),
        notes=batch.notes,
        payer_batch_id=batch.payer_batch_id,
        submitted_at=batch.submitted_at,
        created_at=batch.created_at,
        claim_ids=[str(claim.id) for claim in batch.claims],
    )


@router.post("/claims", response_model=ClaimOut, status_code=201)
async def create_claim(
    payload: ClaimCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*MANAGER_ROLES)),
):
    claim = create_claim_from_invoice(db, payload.invoice_id, _build_actor(current_user, request))
    db.commit()
    db.refresh(claim)
    return claim_to_out(claim)


@router.post("/claims/generate", response_model=BulkResult)
async def generate_claims(
    payload: ClaimGenerateRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*MANAGER_ROLES)),
):
    return generate_claim_batch(db, payload.invoice_ids, _build_actor(current_user, request))


@router.get("/claims/ready-for-payment", response_model=ClaimListResponse)
async def claims_ready_for_payment(
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
):
    return ClaimListResponse(items=[claim_to_out(claim) for claim in list_claims_ready_for_payment(db)])


@router.post("/claims/batches", response_model=BatchOut, status_code=201)
async def create_claim_batch(
    payload: BatchCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*MANAGER_ROLES)),
):
    batch = create_batch(db, payload.claim_ids, payload.notes, _build_actor(current_user, request))
    db.commit()
    db.refresh(batch)
    return batch_to_out(batch)


@router.post("/claims/batches/{batch_id}/submit", response_model=BatchOut)
async def submit_claim_batch(
    batch_id: str,
    payload: BatchSubmitRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*MANAGER_ROLES)),
):
    batch = submit_batch(db, batch_id, payload.payer_batch_id, _build_actor(current_user, request))
    db.commit()
    db.refresh(batch)
    return batch_to_out(batch)


@router.get("/claims/{claim_id}", response_model=ClaimOut)
async def get_claim(
    claim_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
):
    return claim_to_out(load_claim(db, claim_id))


@router.post("/claims/{claim_id}/submit", response_model=ClaimOut)
async def submit_claim_endpoint(
    claim_id: str,
    payload: ClaimSubmitRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*MANAGER_ROLES)),
):
    claim = submit_claim(db, claim_id, payload.payer_reference, _build_actor(current_user, request))
    db.commit()
    db.refresh(claim)
    return claim_to_out(claim)


@router.post("/claims/{claim_id}/outcome", response_model=ClaimOut)
async def record_outcome_endpoint(
    claim_id: str,
    payload: ClaimOutcomeRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*MANAGER_ROLES)),
):
    claim = record_claim_outcome(
        db,
        claim_id,
        payload.outcome,
        _build_actor(current_user, request),
        approved_cents=payload.approved_cents,
        notes=payload.notes,
        line_outcomes=payload.line_outcomes,
    )
    db.commit()
    db.refresh(claim)
    return claim_to_out(claim)


@router.post("/claims/{claim_id}/payment", response_model=ClaimOut)
async def record_payment_endpoint(
    claim_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*MANAGER_ROLES)),
):
    claim = record_claim_payment(db, claim_id, _build_actor(current_user, request))
    db.commit()
    db.refresh(claim)
    return claim_to_out(claim)
