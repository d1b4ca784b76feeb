from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from claimflow.core.auth import STAFF_ROLES, CurrentUser, require_roles
from claimflow.core.dependencies import get_db
from claimflow.models.invoice import FundQuarantine
from claimflow.schemas.quarantine import (
    AutoCreateRequest,
    AutoCreateResponse,
    DrawDownRequest,
    QuarantineCreate,
    QuarantineListResponse,
    QuarantineOut,
    QuarantineStatus,
    QuarantineUpdate,
)
from claimflow.services.fund_quarantine import (
    auto_create_from_service_agreement,
    create_quarantine,
    draw_down,
    get_quarantine,
    list_quarantines,
    release_quarantine,
    update_quarantine,
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


def quarantine_to_out(q: FundQuarantine) -> QuarantineOut:
    quarantined = int(q.quarantined_cents or 0)
    used = int(q.used_cents or 0)
    return QuarantineOut(
        id=str(q.id),
        budget_line_id=str(q.budget_line_id),
        provider_id=str(q.provider_id) if q.provider_id else None,
        service_agreement_id=str(q.service_agreement_id) if q.service_agreement_id else None,
        support_item_code=q.support_item_code,
        quarantined_cents=quarantined,
        used_cents=used,
        remaining_cents=quarantined - used,
        status=q.status,
        notes=q.notes,
        created_by_id=q.created_by_id,
        row_version=int(q.row_version or 0),
        created_at=q.created_at,
        updated_at=q.updated_at,
    )


@router.get("/fund-quarantines", response_model=QuarantineListResponse)
async def list_fund_quarantines(
    budget_line_id: Optional[str] = Query(None),
    provider_id: Optional[str] = Query(None),
    service_agreement_id: Optional[str] = Query(None),
    status: Optional[QuarantineStatus] = Query(None),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
):
    items = list_quarantines(
        db,
        budget_line_id=budget_line_id,
        provider_id=provider_id,
        service_agreement_id=service_agreement_id,
        status=status,
    )
    return QuarantineListResponse(items=[quarantine_to_out(item) for item in items])


@router.post("/fund-quarantines", response_model=QuarantineOut, status_code=201)
async def create_fund_quarantine(
    payload: QuarantineCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
):
    quarantine = create_quarantine(db, payload, _build_actor(current_user, request))
    db.commit()
    db.refresh(quarantine)
    return quarantine_to_out(quarantine)


@router.post("/fund-quarantines/auto-create", response_model=AutoCreateResponse, status_code=201)
async def auto_create_fund_quarantines(
    payload: AutoCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
):
    created, skipped = auto_create_from_service_agreement(
        db,
        payload.service_agreement_id,
        payload.plan_id,
        _build_actor(current_user, request),
    )
    db.commit()
    for quarantine in created:
        db.refresh(quarantine)
    return AutoCreateResponse(
        created=[quarantine_to_out(item) for item in created],
        skipped_rate_line_ids=skipped,
    )


@router.get("/fund-quarantines/{quarantine_id}", response_model=QuarantineOut)
async def get_fund_quarantine(
    quarantine_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
):
    return quarantine_to_out(get_quarantine(db, quarantine_id))


@router.patch("/fund-quarantines/{quarantine_id}", response_model=QuarantineOut)
async def update_fund_quarantine(
    quarantine_id: str,
    payload: QuarantineUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
):
    quarantine = update_quarantine(db, quarantine_id, payload, _build_actor(current_user, request))
    db.commit()
    db.refresh(quarantine)
    return quarantine_to_out(quarantine)


@router.delete("/fund-quarantines/{quarantine_id}", response_model=QuarantineOut)
async def release_fund_quarantine(
    quarantine_id: str,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
):
    quarantine = release_quarantine(db, quarantine_id, _build_actor(current_user, request))
    db.commit()
    db.refresh(quarantine)
    return quarantine_to_out(quarantine)


@router.post("/fund-quarantines/{quarantine_id}/draw-down", response_model=QuarantineOut)
async def draw_down_fund_quarantine(
    quarantine_id: str,
    payload: DrawDownRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
):
    quarantine = draw_down(db, quarantine_id, payload.amount_cents, _build_actor(current_user, request))
    db.commit()
    db.refresh(quarantine)
    return quarantine_to_out(quarantine)
