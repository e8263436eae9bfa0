"""Integration tests for order item handoff endpoints."""

import pytest
from services.fulfillment_service import errors
from services.fulfillment_service.models import (
    IssueStatus,
    Notification,
    NotificationType,
    OrderItemStatus,
    OrderStatus,
    PayoutStatus,
    VendorPayout,
)
from sqlalchemy import select
from tests.factories import VendorProfileFactory, persist, seed_order


async def _payouts(db, order_item_id):
    result = await db.execute(
        select(VendorPayout).where(VendorPayout.order_item_id == order_item_id)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Buyer first, then vendor confirm-handoff
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_buyer_then_vendor_completes_handoff_and_order(
    client, act_as, db_session, gateway, clock
):
    """POST /buyer/orders/{id}/confirm then /vendor/orders/{id}/confirm-handoff."""
    vendor, order, (item,) = await seed_order(db_session)

    act_as(order.buyer_user_id)
    response = await client.post(f"/buyer/orders/{item.id}/confirm")
    assert response.status_code == 200, response.text
    data = response.json()
    assert data["completed"] is False
    assert data["waiting_for_vendor"] is True
    assert data["confirmation_window_expires_at"] is not None

    clock.advance(12)
    act_as(vendor.user_id)
    response = await client.post(f"/vendor/orders/{item.id}/confirm-handoff")
    assert response.status_code == 200, response.text
    data = response.json()
    assert data["success"] is True
    assert "payoutFailed" not in data
    assert data["vendor_confirmed_at"] is not None
    assert data["order_completed"] is True

    assert [t["amount_cents"] for t in gateway.transfers] == [1000]
    await db_session.refresh(order)
    assert order.status == OrderStatus.COMPLETED


@pytest.mark.asyncio
@pytest.mark.integration
async def test_vendor_confirm_handoff_after_window_is_rejected(
    client, act_as, db_session, gateway, clock
):
    vendor, order, (item,) = await seed_order(db_session)
    act_as(order.buyer_user_id)
    await client.post(f"/buyer/orders/{item.id}/confirm")

    clock.advance(31)
    act_as(vendor.user_id)
    response = await client.post(f"/vendor/orders/{item.id}/confirm-handoff")

    assert response.status_code == 409
    assert response.json()["code"] == errors.CONFIRMATION_WINDOW_EXPIRED
    await db_session.refresh(item)
    assert item.buyer_confirmed_at is None
    assert gateway.transfers == []


@pytest.mark.asyncio
@pytest.mark.integration
async def test_confirm_handoff_before_buyer_is_rejected(client, act_as, db_session):
    vendor, _, (item,) = await seed_order(db_session)

    act_as(vendor.user_id)
    response = await client.post(f"/vendor/orders/{item.id}/confirm-handoff")

    assert response.status_code == 400
    assert response.json()["code"] == errors.ORDER_NOT_CONFIRMABLE


@pytest.mark.asyncio
@pytest.mark.integration
async def test_confirm_handoff_keeps_handoff_when_transfer_fails(
    client, act_as, db_session, gateway
):
    vendor, order, (item,) = await seed_order(db_session)
    act_as(order.buyer_user_id)
    await client.post(f"/buyer/orders/{item.id}/confirm")
    gateway.fail_with = "Insufficient funds"

    act_as(vendor.user_id)
    response = await client.post(f"/vendor/orders/{item.id}/confirm-handoff")

    assert response.status_code == 200, response.text
    assert response.json()["payoutFailed"] is True
    await db_session.refresh(item)
    assert item.status == OrderItemStatus.FULFILLED
    assert item.vendor_confirmed_at is not None
    rows = await _payouts(db_session, item.id)
    assert [row.status for row in rows] == [PayoutStatus.FAILED]


# ---------------------------------------------------------------------------
# Vendor fulfill
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_vendor_fulfill_before_buyer_waits_without_payout(
    client, act_as, db_session, gateway
):
    """Vendor-first fulfill: completed false, status fulfilled, no payout."""
    vendor, order, (item,) = await seed_order(db_session)

    act_as(vendor.user_id)
    response = await client.post(f"/vendor/orders/{item.id}/fulfill")

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["success"] is True
    assert data["completed"] is False
    await db_session.refresh(item)
    assert item.status == OrderItemStatus.FULFILLED
    assert item.vendor_confirmed_at is None
    assert await _payouts(db_session, item.id) == []
    assert gateway.transfers == []

    notices = await db_session.execute(
        select(Notification).where(
            Notification.notification_type == NotificationType.ORDER_FULFILLED
        )
    )
    assert [n.user_id for n in notices.scalars()] == [order.buyer_user_id]

    # Repeat is harmless
    response = await client.post(f"/vendor/orders/{item.id}/fulfill")
    assert response.status_code == 200
    assert response.json()["completed"] is False


@pytest.mark.asyncio
@pytest.mark.integration
async def test_vendor_first_fulfill_then_buyer_then_vendor_confirm(
    client, act_as, db_session, gateway, clock
):
    vendor, order, (item,) = await seed_order(db_session)
    act_as(vendor.user_id)
    await client.post(f"/vendor/orders/{item.id}/fulfill")

    act_as(order.buyer_user_id)
    response = await client.post(f"/buyer/orders/{item.id}/confirm")
    assert response.json()["waiting_for_vendor"] is True

    clock.advance(5)
    act_as(vendor.user_id)
    response = await client.post(f"/vendor/orders/{item.id}/confirm-handoff")

    assert response.status_code == 200, response.text
    assert len(gateway.transfers) == 1


@pytest.mark.asyncio
@pytest.mark.integration
async def test_vendor_fulfill_after_buyer_completes(
    client, act_as, db_session, gateway, clock
):
    vendor, order, (item,) = await seed_order(db_session)
    act_as(order.buyer_user_id)
    await client.post(f"/buyer/orders/{item.id}/confirm")

    clock.advance(20)
    act_as(vendor.user_id)
    response = await client.post(f"/vendor/orders/{item.id}/fulfill")

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["completed"] is True
    assert data["vendor_confirmed_at"] is not None
    assert len(gateway.transfers) == 1


@pytest.mark.asyncio
@pytest.mark.integration
async def test_vendor_fulfill_reverts_when_transfer_fails(
    client, act_as, db_session, gateway
):
    vendor, order, (item,) = await seed_order(db_session)
    act_as(order.buyer_user_id)
    await client.post(f"/buyer/orders/{item.id}/confirm")
    gateway.fail_with = "Insufficient funds"

    act_as(vendor.user_id)
    response = await client.post(f"/vendor/orders/{item.id}/fulfill")

    assert response.status_code == 502
    body = response.json()
    assert body["code"] == errors.VENDOR_HANDOFF_FAILED
    assert body["reason"] == "Insufficient funds"
    await db_session.refresh(item)
    assert item.vendor_confirmed_at is None
    assert item.buyer_confirmed_at is not None
    assert item.status == OrderItemStatus.READY

    # The buyer's window is still open; the vendor can try again
    gateway.fail_with = None
    response = await client.post(f"/vendor/orders/{item.id}/fulfill")
    assert response.status_code == 200, response.text
    assert response.json()["completed"] is True
    statuses = sorted(row.status for row in await _payouts(db_session, item.id))
    assert statuses == [PayoutStatus.FAILED, PayoutStatus.PROCESSING]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_vendor_fulfill_requires_payouts_enabled(
    client, act_as, db_session, gateway
):
    vendor = VendorProfileFactory.create(stripe_payouts_enabled=False)
    vendor, order, (item,) = await seed_order(db_session, vendor=vendor)
    act_as(order.buyer_user_id)
    await client.post(f"/buyer/orders/{item.id}/confirm")

    act_as(vendor.user_id)
    response = await client.post(f"/vendor/orders/{item.id}/fulfill")

    assert response.status_code == 400
    assert response.json()["code"] == errors.PAYOUTS_NOT_ENABLED
    await db_session.refresh(item)
    assert item.vendor_confirmed_at is None


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_other_vendor_cannot_touch_item(client, act_as, db_session):
    _, _, (item,) = await seed_order(db_session)
    stranger = await persist(db_session, VendorProfileFactory.create())

    act_as(stranger.user_id)
    response = await client.post(f"/vendor/orders/{item.id}/fulfill")

    assert response.status_code == 404
    assert response.json()["code"] == errors.ORDER_NOT_FOUND


@pytest.mark.asyncio
@pytest.mark.integration
async def test_other_buyer_cannot_confirm(client, act_as, db_session):
    _, _, (item,) = await seed_order(db_session)

    act_as("someone-else")
    response = await client.post(f"/buyer/orders/{item.id}/confirm")

    assert response.status_code == 404


@pytest.mark.asyncio
@pytest.mark.integration
async def test_unpaid_order_cannot_be_handed_off(client, act_as, db_session):
    vendor, _, (item,) = await seed_order(db_session, status=OrderStatus.PENDING)

    act_as(vendor.user_id)
    response = await client.post(f"/vendor/orders/{item.id}/fulfill")

    assert response.status_code == 400
    assert response.json()["order_status"] == "pending"


# ---------------------------------------------------------------------------
# Status changes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_vendor_marks_item_ready_and_notifies_buyer(client, act_as, db_session):
    vendor, order, (item,) = await seed_order(db_session)

    act_as(vendor.user_id)
    response = await client.patch(f"/vendor/orders/{item.id}", json={"action": "ready"})

    assert response.status_code == 200, response.text
    assert response.json()["status"] == "ready"
    notices = await db_session.execute(
        select(Notification).where(
            Notification.notification_type == NotificationType.ORDER_READY
        )
    )
    assert [n.user_id for n in notices.scalars()] == [order.buyer_user_id]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_vendor_misses_then_reschedules_item(client, act_as, db_session):
    vendor, _, (item,) = await seed_order(db_session)
    act_as(vendor.user_id)

    response = await client.patch(
        f"/vendor/orders/{item.id}", json={"action": "missed"}
    )
    assert response.status_code == 200, response.text
    assert response.json()["status"] == "missed"

    response = await client.patch(
        f"/vendor/orders/{item.id}",
        json={"action": "reschedule", "rescheduled_to": "2026-03-09"},
    )
    assert response.status_code == 200, response.text
    assert response.json()["status"] == "rescheduled"
    assert response.json()["rescheduled_to"] == "2026-03-09"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_unknown_item_action_is_rejected(client, act_as, db_session):
    vendor, _, (item,) = await seed_order(db_session)

    act_as(vendor.user_id)
    response = await client.patch(f"/vendor/orders/{item.id}", json={"action": "eaten"})

    assert response.status_code == 400
    assert response.json()["code"] == errors.PICKUP_INVALID_ACTION


# ---------------------------------------------------------------------------
# Lockdown
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_unanswered_buyer_confirmation_blocks_other_fulfills(
    client, act_as, db_session, clock
):
    vendor, order, (stuck, other) = await seed_order(db_session, item_count=2)
    act_as(order.buyer_user_id)
    await client.post(f"/buyer/orders/{stuck.id}/confirm")

    # Window closed 280s ago, past the 270s grace
    clock.advance(30 + 280)
    act_as(vendor.user_id)
    response = await client.post(f"/vendor/orders/{other.id}/fulfill")

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == errors.HANDOFF_LOCKDOWN_ACTIVE
    assert body["unresolved_count"] == 1
    await db_session.refresh(other)
    assert other.status == OrderItemStatus.SCHEDULED


@pytest.mark.asyncio
@pytest.mark.integration
async def test_recently_expired_confirmation_does_not_lock(
    client, act_as, db_session, clock
):
    vendor, order, (stuck, other) = await seed_order(db_session, item_count=2)
    act_as(order.buyer_user_id)
    await client.post(f"/buyer/orders/{stuck.id}/confirm")

    clock.advance(30 + 200)
    act_as(vendor.user_id)
    response = await client.post(f"/vendor/orders/{other.id}/fulfill")

    assert response.status_code == 200, response.text


@pytest.mark.asyncio
@pytest.mark.integration
async def test_answering_the_stuck_handoff_lifts_the_lock(
    client, act_as, db_session, clock
):
    vendor, order, (stuck, other) = await seed_order(db_session, item_count=2)
    act_as(order.buyer_user_id)
    await client.post(f"/buyer/orders/{stuck.id}/confirm")
    clock.advance(30 + 280)

    act_as(vendor.user_id)
    # Too late to confirm; the buyer's confirmation is cleared instead
    response = await client.post(f"/vendor/orders/{stuck.id}/confirm-handoff")
    assert response.status_code == 409

    response = await client.post(f"/vendor/orders/{other.id}/fulfill")
    assert response.status_code == 200, response.text


@pytest.mark.asyncio
@pytest.mark.integration
async def test_reported_issue_does_not_lock_the_vendor(
    client, act_as, db_session, clock
):
    vendor, order, (stuck, other) = await seed_order(db_session, item_count=2)
    act_as(vendor.user_id)
    await client.patch(f"/vendor/orders/{stuck.id}", json={"action": "ready"})
    act_as(order.buyer_user_id)
    await client.post(f"/buyer/orders/{stuck.id}/confirm")
    response = await client.post(f"/buyer/orders/{stuck.id}/report-issue")
    assert response.status_code == 200, response.text

    clock.advance(30 + 280)
    act_as(vendor.user_id)
    response = await client.post(f"/vendor/orders/{other.id}/fulfill")

    assert response.status_code == 200, response.text


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------


async def _report(client, act_as, vendor, order, item, **body):
    act_as(vendor.user_id)
    await client.patch(f"/vendor/orders/{item.id}", json={"action": "ready"})
    act_as(order.buyer_user_id)
    return await client.post(f"/buyer/orders/{item.id}/report-issue", json=body)


@pytest.mark.asyncio
@pytest.mark.integration
async def test_buyer_reports_issue_and_vendor_is_notified(client, act_as, db_session):
    vendor, order, (item,) = await seed_order(db_session)

    response = await _report(
        client, act_as, vendor, order, item, description="Box was empty"
    )

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["message"].startswith("Issue reported")
    assert data["issue_reported_at"] is not None
    await db_session.refresh(item)
    assert item.issue_status == IssueStatus.OPEN
    assert item.issue_reported_by == "buyer"
    assert item.issue_description == "Box was empty"
    notices = await db_session.execute(
        select(Notification).where(
            Notification.notification_type == NotificationType.PICKUP_ISSUE_REPORTED
        )
    )
    assert [n.user_id for n in notices.scalars()] == [vendor.user_id]

    response = await client.post(f"/buyer/orders/{item.id}/report-issue")
    assert response.status_code == 400
    assert response.json()["code"] == errors.ISSUE_ALREADY_REPORTED


@pytest.mark.asyncio
@pytest.mark.integration
async def test_issue_without_description_uses_default(client, act_as, db_session):
    vendor, order, (item,) = await seed_order(db_session)

    act_as(vendor.user_id)
    await client.post(f"/vendor/orders/{item.id}/fulfill")
    act_as(order.buyer_user_id)
    response = await client.post(f"/buyer/orders/{item.id}/report-issue")

    assert response.status_code == 200, response.text
    await db_session.refresh(item)
    assert item.issue_description == "Buyer reported not receiving item"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_issue_on_scheduled_item_is_rejected(client, act_as, db_session):
    _, order, (item,) = await seed_order(db_session)

    act_as(order.buyer_user_id)
    response = await client.post(f"/buyer/orders/{item.id}/report-issue")

    assert response.status_code == 400
    assert response.json()["code"] == errors.ORDER_NOT_CONFIRMABLE


@pytest.mark.asyncio
@pytest.mark.integration
async def test_vendor_confirms_delivery_on_reported_issue(client, act_as, db_session):
    vendor, order, (item,) = await seed_order(db_session)
    await _report(client, act_as, vendor, order, item)

    act_as(vendor.user_id)
    response = await client.post(
        f"/vendor/orders/{item.id}/resolve-issue",
        json={"action": "confirm_delivery", "notes": "Handed over at 3pm"},
    )

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["action"] == "confirm_delivery"
    assert data["item"]["issue_status"] == "resolved"
    assert data["item"]["status"] == "ready"
    await db_session.refresh(item)
    assert item.issue_resolved_by == vendor.user_id
    assert item.issue_admin_notes == (
        "Vendor confirmed delivery. Notes: Handed over at 3pm"
    )
    notices = await db_session.execute(
        select(Notification).where(
            Notification.notification_type == NotificationType.ISSUE_RESOLVED
        )
    )
    assert [n.user_id for n in notices.scalars()] == [order.buyer_user_id]

    response = await client.post(
        f"/vendor/orders/{item.id}/resolve-issue", json={"action": "issue_refund"}
    )
    assert response.status_code == 400
    assert response.json()["code"] == errors.ISSUE_NOT_OPEN


@pytest.mark.asyncio
@pytest.mark.integration
async def test_vendor_refund_cancels_item_and_completes_order(
    client, act_as, db_session, gateway
):
    vendor, order, (reported, delivered) = await seed_order(
        db_session, item_count=2, stripe_payment_intent_id="pi_123"
    )
    await _report(client, act_as, vendor, order, reported)
    act_as(order.buyer_user_id)
    await client.post(f"/buyer/orders/{delivered.id}/confirm")
    act_as(vendor.user_id)
    await client.post(f"/vendor/orders/{delivered.id}/confirm-handoff")
    await db_session.refresh(order)
    assert order.status == OrderStatus.PAID

    response = await client.post(
        f"/vendor/orders/{reported.id}/resolve-issue", json={"action": "issue_refund"}
    )

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["message"] == "Refund issued and issue resolved."
    assert data["item"]["status"] == "cancelled"
    assert data["item"]["refund_amount_cents"] == 1000
    assert [(r["payment_intent"], r["amount_cents"]) for r in gateway.refunds] == [
        ("pi_123", 1000)
    ]
    await db_session.refresh(reported)
    assert reported.stripe_refund_id == "re_test_1"
    assert reported.cancellation_reason == "Vendor-initiated refund for reported issue."
    await db_session.refresh(order)
    assert order.status == OrderStatus.COMPLETED


@pytest.mark.asyncio
@pytest.mark.integration
async def test_failed_refund_still_resolves_issue(client, act_as, db_session, gateway):
    vendor, order, (item,) = await seed_order(
        db_session, stripe_payment_intent_id="pi_123"
    )
    await _report(client, act_as, vendor, order, item)
    gateway.refund_fail_with = "Charge already refunded"

    act_as(vendor.user_id)
    response = await client.post(
        f"/vendor/orders/{item.id}/resolve-issue", json={"action": "issue_refund"}
    )

    assert response.status_code == 200, response.text
    await db_session.refresh(item)
    assert item.status == OrderItemStatus.CANCELLED
    assert item.issue_status == IssueStatus.RESOLVED
    assert item.stripe_refund_id is None


@pytest.mark.asyncio
@pytest.mark.integration
async def test_resolve_without_report_or_with_bad_action(client, act_as, db_session):
    vendor, _, (item,) = await seed_order(db_session)
    act_as(vendor.user_id)

    response = await client.post(
        f"/vendor/orders/{item.id}/resolve-issue", json={"action": "confirm_delivery"}
    )
    assert response.status_code == 400
    assert response.json()["code"] == errors.ISSUE_NOT_OPEN

    response = await client.post(
        f"/vendor/orders/{item.id}/resolve-issue", json={"action": "ignore"}
    )
    assert response.status_code == 400
    assert response.json()["code"] == errors.PICKUP_INVALID_ACTION


@pytest.mark.asyncio
@pytest.mark.integration
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "fulfillment"}
