"""Request and response schemas for the fulfillment service."""

import uuid
from datetime import date, datetime
from typing import Optional

from libs.common.datetime_utils import as_utc
from pydantic import BaseModel, ConfigDict, Field, field_validator
from services.fulfillment_service.models import (
    FeeEntryType,
    IssueStatus,
    OrderItemStatus,
    OrderStatus,
    PickupStatus,
)


class UtcModel(BaseModel):
    """Base model that renders every datetime as aware UTC."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    @field_validator("*", mode="after")
    @classmethod
    def _normalize_datetimes(cls, value):
        if isinstance(value, datetime):
            return as_utc(value)
        return value


# ============================================================================
# ORDER ITEMS
# ============================================================================


class VendorItemActionRequest(BaseModel):
    """Vendor status change on an order item."""

    action: str = Field(..., description="ready, missed or reschedule")
    rescheduled_to: Optional[date] = None


class OrderItemResponse(UtcModel):
    id: uuid.UUID
    order_id: uuid.UUID
    listing_title: str
    status: OrderItemStatus
    buyer_confirmed_at: Optional[datetime] = None
    vendor_confirmed_at: Optional[datetime] = None
    confirmation_window_expires_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    missed_at: Optional[datetime] = None
    rescheduled_to: Optional[date] = None
    issue_status: Optional[IssueStatus] = None
    issue_reported_at: Optional[datetime] = None
    issue_description: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    refund_amount_cents: Optional[int] = None


class FulfillResponse(UtcModel):
    """Vendor fulfill result; ``completed`` is false until the buyer confirms."""

    success: bool = True
    completed: bool
    vendor_confirmed_at: Optional[datetime] = None
    order_completed: Optional[bool] = None
    message: Optional[str] = None


class ConfirmHandoffResponse(UtcModel):
    success: bool = True
    message: str
    payout_failed: Optional[bool] = Field(default=None, serialization_alias="payoutFailed")
    vendor_confirmed_at: Optional[datetime] = None
    order_completed: Optional[bool] = None


class BuyerConfirmResponse(UtcModel):
    success: bool = True
    completed: bool
    waiting_for_vendor: bool
    message: str
    buyer_confirmed_at: Optional[datetime] = None
    confirmation_window_expires_at: Optional[datetime] = None
    payout_failed: Optional[bool] = Field(default=None, serialization_alias="payoutFailed")
    order_completed: Optional[bool] = None


class ReportIssueRequest(BaseModel):
    description: Optional[str] = Field(default=None, max_length=2000)


class ReportIssueResponse(UtcModel):
    success: bool = True
    message: str
    issue_reported_at: datetime


class ResolveIssueRequest(BaseModel):
    action: str = Field(..., description="confirm_delivery or issue_refund")
    notes: Optional[str] = Field(default=None, max_length=2000)


class ResolveIssueResponse(UtcModel):
    success: bool = True
    message: str
    action: str
    item: OrderItemResponse


class ExternalPaymentResponse(BaseModel):
    success: bool = True
    order_id: uuid.UUID
    status: OrderStatus
    fees_recorded_cents: int
    message: str


# ============================================================================
# MARKET BOX PICKUPS
# ============================================================================


class PickupUpdateRequest(BaseModel):
    """Vendor pickup update. Omitting ``action`` only saves the notes."""

    action: Optional[str] = None
    vendor_notes: Optional[str] = Field(default=None, max_length=2000)
    rescheduled_to: Optional[date] = None


class BuyerPickupConfirmRequest(BaseModel):
    pickup_id: uuid.UUID


class PickupResponse(UtcModel):
    id: uuid.UUID
    subscription_id: uuid.UUID
    week_number: int
    scheduled_date: date
    status: PickupStatus
    ready_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    missed_at: Optional[datetime] = None
    rescheduled_to: Optional[date] = None
    buyer_confirmed_at: Optional[datetime] = None
    vendor_confirmed_at: Optional[datetime] = None
    confirmation_window_expires_at: Optional[datetime] = None
    vendor_notes: Optional[str] = None


class PickupActionResponse(UtcModel):
    success: bool = True
    pickup: PickupResponse
    completed: bool
    waiting_for_buyer: bool
    waiting_for_vendor: bool
    confirmation_window_expires_at: Optional[datetime] = None
    message: str
    payout_failed: Optional[bool] = Field(default=None, serialization_alias="payoutFailed")
    subscription_completed: Optional[bool] = None


# ============================================================================
# FEES
# ============================================================================


class FeeLedgerEntryResponse(UtcModel):
    id: uuid.UUID
    order_id: Optional[uuid.UUID] = None
    amount_cents: int
    entry_type: FeeEntryType
    description: str
    created_at: datetime


class FeeBalanceResponse(UtcModel):
    vendor_profile_id: uuid.UUID
    balance_cents: int
    oldest_unpaid_at: Optional[datetime] = None
    requires_payment: bool
    entries: list[FeeLedgerEntryResponse] = []
