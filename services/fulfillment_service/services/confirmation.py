"""Mutual handoff confirmation for order items and market box pickups.

Both parties must confirm within a short window of each other. Every write
to the confirmation columns is a conditional UPDATE; zero rows affected
means another request changed the row first and the decision is re-made
against fresh state.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Union

from libs.common.datetime_utils import as_utc
from libs.common.logging import get_logger
from services.fulfillment_service import errors
from services.fulfillment_service.context import FulfillmentContext
from services.fulfillment_service.models import (
    HandoffRole,
    MarketBoxPickup,
    OrderItem,
    OrderItemStatus,
    PickupStatus,
)
from sqlalchemy import and_, case, func, literal, or_, update

logger = get_logger(__name__)

HandoffRecord = Union[OrderItem, MarketBoxPickup]


@dataclass(frozen=True)
class HandoffKind:
    """Status vocabulary of one kind of handoff record."""

    model: type
    label: str
    scheduled: object
    ready: object
    terminal: object
    missed: object
    rescheduled: object
    acknowledgeable: frozenset


ORDER_ITEM = HandoffKind(
    model=OrderItem,
    label="order item",
    scheduled=OrderItemStatus.SCHEDULED,
    ready=OrderItemStatus.READY,
    terminal=OrderItemStatus.FULFILLED,
    missed=OrderItemStatus.MISSED,
    rescheduled=OrderItemStatus.RESCHEDULED,
    # FULFILLED without a vendor confirmation is the vendor-first handoff
    acknowledgeable=frozenset(
        {OrderItemStatus.SCHEDULED, OrderItemStatus.READY, OrderItemStatus.FULFILLED}
    ),
)

PICKUP = HandoffKind(
    model=MarketBoxPickup,
    label="pickup",
    scheduled=PickupStatus.SCHEDULED,
    ready=PickupStatus.READY,
    terminal=PickupStatus.PICKED_UP,
    missed=PickupStatus.MISSED,
    rescheduled=PickupStatus.RESCHEDULED,
    acknowledgeable=frozenset({PickupStatus.SCHEDULED, PickupStatus.READY}),
)


def kind_of(record: HandoffRecord) -> HandoffKind:
    return PICKUP if isinstance(record, MarketBoxPickup) else ORDER_ITEM


@dataclass
class AcknowledgeResult:
    record: HandoffRecord
    role: HandoffRole
    # True when this call completed the mutual confirmation
    completed: bool
    confirmed_at: datetime
    window_expires_at: Optional[datetime] = None


def _columns(kind: HandoffKind, role: HandoffRole):
    model = kind.model
    if role == HandoffRole.BUYER:
        return model.buyer_confirmed_at, model.vendor_confirmed_at
    return model.vendor_confirmed_at, model.buyer_confirmed_at


def _timestamps(record: HandoffRecord, role: HandoffRole):
    if role == HandoffRole.BUYER:
        return as_utc(record.buyer_confirmed_at), as_utc(record.vendor_confirmed_at)
    return as_utc(record.vendor_confirmed_at), as_utc(record.buyer_confirmed_at)


def is_fully_confirmed(record: HandoffRecord) -> bool:
    return (
        record.status == kind_of(record).terminal
        and record.buyer_confirmed_at is not None
        and record.vendor_confirmed_at is not None
    )


def window_is_open(record: HandoffRecord, now: datetime) -> bool:
    expires_at = as_utc(record.confirmation_window_expires_at)
    return expires_at is not None and now <= expires_at


async def _conditional_update(ctx: FulfillmentContext, kind, record, *where, **values):
    stmt = (
        update(kind.model)
        .where(kind.model.id == record.id, *where)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await ctx.db.execute(stmt)
    return result.rowcount


async def _expire_other_party(
    ctx: FulfillmentContext, kind: HandoffKind, record, role: HandoffRole, now: datetime
) -> bool:
    """Discard the other party's stale confirmation. True if this call did it.

    ``role`` is the caller; the cleared side is the opposite one.
    """
    own_col, other_col = _columns(kind, role)
    model = kind.model
    rowcount = await _conditional_update(
        ctx,
        kind,
        record,
        own_col.is_(None),
        other_col.is_not(None),
        or_(
            model.confirmation_window_expires_at.is_(None),
            model.confirmation_window_expires_at < now,
        ),
        **{other_col.key: None, "confirmation_window_expires_at": None},
    )
    if rowcount:
        await ctx.db.commit()
        logger.info(
            "Cleared stale counterpart confirmation on %s %s (caller=%s)",
            kind.label,
            record.id,
            role.value,
        )
    return bool(rowcount)


async def _claim_first(
    ctx: FulfillmentContext, kind: HandoffKind, record, role: HandoffRole, now: datetime
) -> bool:
    """Record the first confirmation and open the window.

    Also replaces this party's own earlier confirmation once it has expired.
    """
    own_col, other_col = _columns(kind, role)
    model = kind.model
    expires_at = now + timedelta(seconds=ctx.settings.CONFIRMATION_WINDOW_SECONDS)
    promote = model.status == kind.scheduled
    rowcount = await _conditional_update(
        ctx,
        kind,
        record,
        other_col.is_(None),
        or_(
            own_col.is_(None),
            model.confirmation_window_expires_at.is_(None),
            model.confirmation_window_expires_at < now,
        ),
        model.status.in_(kind.acknowledgeable),
        **{
            own_col.key: now,
            "confirmation_window_expires_at": expires_at,
            "status": case(
                (promote, literal(kind.ready, model.status.type)),
                else_=model.status,
            ),
            "ready_at": case(
                (promote, func.coalesce(model.ready_at, now)), else_=model.ready_at
            ),
        },
    )
    return bool(rowcount)


async def _complete(
    ctx: FulfillmentContext, kind: HandoffKind, record, role: HandoffRole, now: datetime
) -> bool:
    """Second confirmation inside the window: move to the terminal status."""
    own_col, other_col = _columns(kind, role)
    model = kind.model
    values = {
        own_col.key: now,
        "confirmation_window_expires_at": None,
        "status": kind.terminal,
        "ready_at": func.coalesce(model.ready_at, now),
    }
    if kind is PICKUP:
        values["picked_up_at"] = now
    rowcount = await _conditional_update(
        ctx,
        kind,
        record,
        own_col.is_(None),
        other_col.is_not(None),
        model.confirmation_window_expires_at >= now,
        model.status.in_(kind.acknowledgeable),
        **values,
    )
    return bool(rowcount)


async def acknowledge(
    ctx: FulfillmentContext, role: HandoffRole, record: HandoffRecord
) -> AcknowledgeResult:
    """Record one party's confirmation of a handoff.

    The caller has already authorized ``role`` on ``record``. A party that
    already holds an unexpired confirmation is rejected rather than having
    its window reset.

    Raises:
        FulfillmentError: already confirmed, not confirmable, window
            expired (after clearing the stale confirmation), or race lost.
    """
    kind = kind_of(record)

    for attempt in range(2):
        now = ctx.now()
        own_at, other_at = _timestamps(record, role)

        if is_fully_confirmed(record):
            raise errors.already_confirmed(
                f"This {kind.label} has already been confirmed by both parties"
            )
        if record.status not in kind.acknowledgeable:
            raise errors.not_confirmable(
                f"Cannot confirm a {kind.label} with status '{record.status.value}'",
                status=record.status.value,
            )
        if own_at is not None and other_at is None and window_is_open(record, now):
            raise errors.already_confirmed(
                "You already confirmed. Waiting for the other party."
            )
        if own_at is not None and other_at is not None:
            raise errors.already_confirmed()

        if other_at is None:
            if await _claim_first(ctx, kind, record, role, now):
                await ctx.db.commit()
                await ctx.db.refresh(record)
                logger.info(
                    "%s confirmed %s %s first, window open until %s",
                    role.value,
                    kind.label,
                    record.id,
                    record.confirmation_window_expires_at,
                )
                return AcknowledgeResult(
                    record=record,
                    role=role,
                    completed=False,
                    confirmed_at=now,
                    window_expires_at=as_utc(record.confirmation_window_expires_at),
                )
        elif not window_is_open(record, now):
            other_role = (
                HandoffRole.VENDOR if role == HandoffRole.BUYER else HandoffRole.BUYER
            )
            if await _expire_other_party(ctx, kind, record, role, now):
                await ctx.db.refresh(record)
                raise errors.window_expired(
                    f"The {other_role.value}'s confirmation expired. "
                    "Both parties must confirm within "
                    f"{ctx.settings.CONFIRMATION_WINDOW_SECONDS} seconds of each other."
                )
        elif await _complete(ctx, kind, record, role, now):
            await ctx.db.commit()
            await ctx.db.refresh(record)
            logger.info(
                "%s %s confirmed by both parties (%s second)",
                kind.label,
                record.id,
                role.value,
            )
            return AcknowledgeResult(
                record=record, role=role, completed=True, confirmed_at=now
            )

        # Lost a race: the row no longer matches what we read
        logger.warning(
            "Confirmation race on %s %s (%s, attempt %d)",
            kind.label,
            record.id,
            role.value,
            attempt + 1,
        )
        await ctx.db.rollback()
        await ctx.db.refresh(record)

    raise errors.race_lost()


# ---------------------------------------------------------------------------
# Vendor-only transitions
# ---------------------------------------------------------------------------


async def mark_ready(ctx: FulfillmentContext, record: HandoffRecord) -> HandoffRecord:
    """scheduled -> ready."""
    kind = kind_of(record)
    now = ctx.now()
    if record.status != kind.scheduled:
        raise errors.invalid_transition(
            f"Can only mark scheduled {kind.label}s as ready"
        )
    rowcount = await _conditional_update(
        ctx,
        kind,
        record,
        kind.model.status == kind.scheduled,
        status=kind.ready,
        ready_at=func.coalesce(kind.model.ready_at, now),
    )
    if not rowcount:
        await ctx.db.rollback()
        raise errors.race_lost()
    return record


async def mark_missed(ctx: FulfillmentContext, record: HandoffRecord) -> HandoffRecord:
    """{scheduled, ready} -> missed; any one-sided confirmation is dropped."""
    kind = kind_of(record)
    now = ctx.now()
    allowed = (kind.scheduled, kind.ready)
    if record.status not in allowed:
        raise errors.invalid_transition(
            f"Can only mark scheduled or ready {kind.label}s as missed"
        )
    rowcount = await _conditional_update(
        ctx,
        kind,
        record,
        kind.model.status.in_(allowed),
        status=kind.missed,
        missed_at=now,
        buyer_confirmed_at=None,
        vendor_confirmed_at=None,
        confirmation_window_expires_at=None,
    )
    if not rowcount:
        await ctx.db.rollback()
        raise errors.race_lost()
    return record


async def reschedule(
    ctx: FulfillmentContext, record: HandoffRecord, rescheduled_to: Optional[date]
) -> HandoffRecord:
    """missed -> rescheduled to a new date."""
    kind = kind_of(record)
    if rescheduled_to is None:
        raise errors.FulfillmentError(
            400,
            errors.PICKUP_RESCHEDULE_DATE_REQUIRED,
            "rescheduled_to date is required",
        )
    if record.status != kind.missed:
        raise errors.invalid_transition(f"Can only reschedule missed {kind.label}s")
    rowcount = await _conditional_update(
        ctx,
        kind,
        record,
        kind.model.status == kind.missed,
        status=kind.rescheduled,
        rescheduled_to=rescheduled_to,
    )
    if not rowcount:
        await ctx.db.rollback()
        raise errors.race_lost()
    return record


async def revert_vendor_confirmation(
    ctx: FulfillmentContext,
    record: OrderItem,
    previous_status: OrderItemStatus,
    previous_expires_at: Optional[datetime],
) -> None:
    """Undo a vendor completion whose payout could not be sent.

    The buyer's confirmation and its window are restored so the vendor can
    retry while the window is still open.
    """
    await _conditional_update(
        ctx,
        ORDER_ITEM,
        record,
        and_(
            OrderItem.vendor_confirmed_at.is_not(None),
            OrderItem.status == OrderItemStatus.FULFILLED,
        ),
        status=previous_status,
        vendor_confirmed_at=None,
        confirmation_window_expires_at=previous_expires_at,
    )
    await ctx.db.commit()
    await ctx.db.refresh(record)
    logger.warning(
        "Reverted vendor confirmation on order item %s to %s",
        record.id,
        previous_status.value,
    )
