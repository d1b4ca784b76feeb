"""
Fund quarantine: money reserved on a budget line for a provider or agreement.

Capacity of a budget line is ``allocated - spent - sum(other ACTIVE quarantines)``.
Check-then-reserve is serialised per budget line: the line is read (FOR UPDATE
where supported), capacity computed, and the line's ``row_version`` bumped with
a compare-and-swap. Losing the swap means another reservation committed in
between, so the check is repeated against fresh data.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from claimflow.core.config import get_settings
from claimflow.models.invoice import BudgetLine, FundQuarantine, ServiceAgreement
from claimflow.schemas.events import EventType
from claimflow.schemas.quarantine import QuarantineCreate, QuarantineStatus, QuarantineUpdate
from claimflow.services.errors import (
    BudgetLineConflict,
    DrawDownExceedsQuarantine,
    InsufficientBudgetCapacity,
    InvalidStatus,
    NotFound,
    QuarantineNotActive,
    ValidationFailed,
)
from claimflow.services.event_outbox import emit_event
from claimflow.services.transition_service import (
    Actor,
    _with_for_update_if_supported,
    create_audit_log,
    parse_id,
)

logger = logging.getLogger(__name__)


def _snapshot(q: FundQuarantine) -> dict[str, Any]:
    return {
        "budget_line_id": str(q.budget_line_id),
        "quarantined_cents": int(q.quarantined_cents or 0),
        "used_cents": int(q.used_cents or 0),
        "status": q.status,
        "support_item_code": q.support_item_code,
    }


def _event_payload(q: FundQuarantine, **extra: Any) -> dict[str, Any]:
    payload = {
        "quarantine_id": str(q.id),
        "provider_id": str(q.provider_id) if q.provider_id else None,
        "service_agreement_id": str(q.service_agreement_id) if q.service_agreement_id else None,
        "row_version": int(q.row_version or 0),
        **_snapshot(q),
    }
    payload.update(extra)
    return payload


def _load_budget_line(db: Session, budget_line_id: Any) -> BudgetLine:
    stmt = (
        select(BudgetLine)
        .where(BudgetLine.id == parse_id(budget_line_id, label="Budget line"))
        .execution_options(populate_existing=True)
    )
    line = db.execute(_with_for_update_if_supported(stmt, db)).scalar_one_or_none()
    if line is None:
        raise NotFound("Budget line not found")
    return line


def _active_quarantined_cents(db: Session, budget_line_id, exclude_id=None) -> int:
    stmt = select(func.coalesce(func.sum(FundQuarantine.quarantined_cents), 0)).where(
        FundQuarantine.budget_line_id == budget_line_id,
        FundQuarantine.status == QuarantineStatus.ACTIVE.value,
    )
    if exclude_id is not None:
        stmt = stmt.where(FundQuarantine.id != exclude_id)
    return int(db.execute(stmt).scalar_one())


def available_capacity(db: Session, line: BudgetLine, *, exclude_id=None) -> int:
    reserved = _active_quarantined_cents(db, line.id, exclude_id)
    return int(line.allocated_cents or 0) - int(line.spent_cents or 0) - reserved


def _bump_budget_line(db: Session, line: BudgetLine, seen_version: int) -> bool:
    result = db.execute(
        update(BudgetLine)
        .where(BudgetLine.id == line.id, BudgetLine.row_version == seen_version)
        .values(row_version=seen_version + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def reserve_capacity(db: Session, budget_line_id: Any, amount_cents: int, *, exclude_id=None) -> BudgetLine:
    """Check ``amount_cents`` fits on the line and claim the line's version.

    On return the caller holds the reservation slot for the rest of its
    transaction; any competing reservation will lose its compare-and-swap.
    """
    attempts = max(1, int(get_settings().budget_line_retry_attempts))
    for attempt in range(1, attempts + 1):
        line = _load_budget_line(db, budget_line_id)
        seen_version = int(line.row_version or 0)
        available = available_capacity(db, line, exclude_id=exclude_id)
        if amount_cents > available:
            raise InsufficientBudgetCapacity(
                f"Requested {amount_cents} cents exceeds available {max(available, 0)} cents"
            )
        if _bump_budget_line(db, line, seen_version):
            return line
        logger.info(
            "Budget line %s changed during reservation (attempt %s/%s)",
            line.id,
            attempt,
            attempts,
        )
    raise BudgetLineConflict()


def load_quarantine(db: Session, quarantine_id: Any, *, for_update: bool = False) -> FundQuarantine:
    stmt = select(FundQuarantine).where(FundQuarantine.id == parse_id(quarantine_id, label="Quarantine"))
    if for_update:
        stmt = _with_for_update_if_supported(stmt, db)
    quarantine = db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()
    if quarantine is None:
        raise NotFound("Quarantine not found")
    return quarantine


def get_quarantine(db: Session, quarantine_id: Any) -> FundQuarantine:
    return load_quarantine(db, quarantine_id)


def list_quarantines(
    db: Session,
    *,
    budget_line_id: Optional[str] = None,
    provider_id: Optional[str] = None,
    service_agreement_id: Optional[str] = None,
    status: Optional[QuarantineStatus] = None,
) -> list[FundQuarantine]:
    stmt = select(FundQuarantine)
    if budget_line_id:
        stmt = stmt.where(FundQuarantine.budget_line_id == parse_id(budget_line_id, label="Budget line"))
    if provider_id:
        stmt = stmt.where(FundQuarantine.provider_id == parse_id(provider_id, label="Provider"))
    if service_agreement_id:
        stmt = stmt.where(
            FundQuarantine.service_agreement_id == parse_id(service_agreement_id, label="Service agreement")
        )
    if status is not None:
        stmt = stmt.where(FundQuarantine.status == status.value)
    return list(db.execute(stmt.order_by(FundQuarantine.created_at.desc())).scalars().all())


def create_quarantine(db: Session, data: QuarantineCreate, actor: Actor) -> FundQuarantine:
    if data.quarantined_cents <= 0:
        raise ValidationFailed("quarantined_cents must be positive")
    line = reserve_capacity(db, data.budget_line_id, data.quarantined_cents)

    quarantine = FundQuarantine(
        budget_line_id=line.id,
        provider_id=parse_id(data.provider_id, label="Provider") if data.provider_id else None,
        service_agreement_id=(
            parse_id(data.service_agreement_id, label="Service agreement") if data.service_agreement_id else None
        ),
        support_item_code=data.support_item_code,
        quarantined_cents=data.quarantined_cents,
        used_cents=0,
        status=QuarantineStatus.ACTIVE.value,
        notes=data.notes,
        created_by_id=actor.actor_id,
        row_version=1,
    )
    db.add(quarantine)
    db.flush()

    create_audit_log(
        db,
        entity_type="fund_quarantine",
        entity_id=str(quarantine.id),
        action="FUND_QUARANTINE_CREATED",
        old_value=None,
        new_value=_snapshot(quarantine),
        **actor.audit_fields(),
    )
    emit_event(
        db,
        EventType.FUND_QUARANTINE_CREATED,
        _event_payload(quarantine),
        entity_type="fund_quarantine",
        entity_id=str(quarantine.id),
    )
    return quarantine


def _require_active(quarantine: FundQuarantine) -> None:
    if quarantine.status != QuarantineStatus.ACTIVE.value:
        raise QuarantineNotActive()


def update_quarantine(db: Session, quarantine_id: Any, data: QuarantineUpdate, actor: Actor) -> FundQuarantine:
    quarantine = load_quarantine(db, quarantine_id, for_update=True)
    _require_active(quarantine)
    before = _snapshot(quarantine)
    changes = data.model_dump(exclude_unset=True)

    new_amount = changes.get("quarantined_cents")
    if new_amount is not None and new_amount != quarantine.quarantined_cents:
        if new_amount < int(quarantine.used_cents or 0):
            raise ValidationFailed("quarantined_cents cannot drop below the amount already used")
        reserve_capacity(db, quarantine.budget_line_id, new_amount, exclude_id=quarantine.id)
        quarantine.quarantined_cents = new_amount

    if "support_item_code" in changes:
        quarantine.support_item_code = changes["support_item_code"]
    if "notes" in changes:
        quarantine.notes = changes["notes"]
    quarantine.row_version = int(quarantine.row_version or 0) + 1

    create_audit_log(
        db,
        entity_type="fund_quarantine",
        entity_id=str(quarantine.id),
        action="FUND_QUARANTINE_UPDATED",
        old_value=before,
        new_value=_snapshot(quarantine),
        **actor.audit_fields(),
    )
    return quarantine


def release_quarantine(db: Session, quarantine_id: Any, actor: Actor) -> FundQuarantine:
    quarantine = load_quarantine(db, quarantine_id, for_update=True)
    _require_active(quarantine)
    before = _snapshot(quarantine)

    result = db.execute(
        update(FundQuarantine)
        .where(FundQuarantine.id == quarantine.id, FundQuarantine.status == QuarantineStatus.ACTIVE.value)
        .values(status=QuarantineStatus.RELEASED.value, row_version=FundQuarantine.row_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise QuarantineNotActive()
    db.refresh(quarantine)

    create_audit_log(
        db,
        entity_type="fund_quarantine",
        entity_id=str(quarantine.id),
        action="FUND_QUARANTINE_RELEASED",
        old_value=before,
        new_value=_snapshot(quarantine),
        **actor.audit_fields(),
    )
    emit_event(
        db,
        EventType.FUND_QUARANTINE_RELEASED,
        _event_payload(quarantine),
        entity_type="fund_quarantine",
        entity_id=str(quarantine.id),
    )
    return quarantine


def _utilisation_percent(used: int, quarantined: int) -> Decimal:
    if quarantined <= 0:
        return Decimal(0)
    return Decimal(used) * 100 / Decimal(quarantined)


def draw_down(db: Session, quarantine_id: Any, amount_cents: int, actor: Actor) -> FundQuarantine:
    if amount_cents <= 0:
        raise ValidationFailed("amount_cents must be positive")
    quarantine = load_quarantine(db, quarantine_id, for_update=True)
    _require_active(quarantine)
    used_before = int(quarantine.used_cents or 0)
    if used_before + amount_cents > int(quarantine.quarantined_cents):
        raise DrawDownExceedsQuarantine(
            f"Draw-down of {amount_cents} cents exceeds remaining {int(quarantine.quarantined_cents) - used_before} cents"
        )

    result = db.execute(
        update(FundQuarantine)
        .where(
            FundQuarantine.id == quarantine.id,
            FundQuarantine.status == QuarantineStatus.ACTIVE.value,
            FundQuarantine.used_cents + amount_cents <= FundQuarantine.quarantined_cents,
        )
        .values(
            used_cents=FundQuarantine.used_cents + amount_cents,
            row_version=FundQuarantine.row_version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # Lost to a concurrent draw-down or release; report against fresh state.
        db.refresh(quarantine)
        _require_active(quarantine)
        raise DrawDownExceedsQuarantine()
    db.refresh(quarantine)

    create_audit_log(
        db,
        entity_type="fund_quarantine",
        entity_id=str(quarantine.id),
        action="FUND_QUARANTINE_DRAWN_DOWN",
        old_value={"used_cents": used_before},
        new_value={"used_cents": int(quarantine.used_cents)},
        metadata={"amount_cents": amount_cents},
        **actor.audit_fields(),
    )

    threshold = Decimal(get_settings().quarantine_threshold_percent)
    total = int(quarantine.quarantined_cents)
    before_pct = _utilisation_percent(used_before, total)
    after_pct = _utilisation_percent(int(quarantine.used_cents), total)
    if before_pct < threshold <= after_pct:
        emit_event(
            db,
            EventType.FUND_QUARANTINE_THRESHOLD_REACHED,
            _event_payload(
                quarantine,
                utilisation_percent=float(after_pct.quantize(Decimal("0.01"))),
                threshold_percent=int(threshold),
            ),
            entity_type="fund_quarantine",
            entity_id=str(quarantine.id),
        )
    return quarantine


def _reservation_amount(rate_line) -> int:
    quantity = Decimal(str(rate_line.max_quantity)) if rate_line.max_quantity is not None else Decimal(1)
    amount = quantity * Decimal(int(rate_line.agreed_rate_cents))
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def auto_create_from_service_agreement(
    db: Session,
    service_agreement_id: Any,
    plan_id: Any,
    actor: Actor,
) -> tuple[list[FundQuarantine], list[str]]:
    """One quarantine per rate line of an ACTIVE agreement.

    Rate lines with no matching budget line on the plan, or without enough
    capacity, are skipped and reported back by id.
    """
    agreement = db.get(ServiceAgreement, parse_id(service_agreement_id, label="Service agreement"))
    if agreement is None:
        raise NotFound("Service agreement not found")
    if agreement.status != "ACTIVE":
        raise InvalidStatus("Service agreement must be ACTIVE")
    plan_uuid = parse_id(plan_id, label="Plan")

    created: list[FundQuarantine] = []
    skipped: list[str] = []
    for rate_line in agreement.rate_lines:
        budget_line = (
            db.execute(
                select(BudgetLine).where(
                    BudgetLine.plan_id == plan_uuid,
                    BudgetLine.category_code == rate_line.category_code,
                )
            )
            .scalars()
            .first()
        )
        amount = _reservation_amount(rate_line)
        if budget_line is None or amount <= 0:
            skipped.append(str(rate_line.id))
            continue
        try:
            quarantine = create_quarantine(
                db,
                QuarantineCreate(
                    budget_line_id=str(budget_line.id),
                    quarantined_cents=amount,
                    provider_id=str(agreement.provider_id),
                    service_agreement_id=str(agreement.id),
                    support_item_code=rate_line.support_item_code,
                    notes=f"Auto-created from service agreement {agreement.agreement_ref}",
                ),
                actor,
            )
        except InsufficientBudgetCapacity:
            logger.info("Skipping rate line %s: insufficient capacity on %s", rate_line.id, budget_line.id)
            skipped.append(str(rate_line.id))
            continue
        created.append(quarantine)

    return created, skipped
