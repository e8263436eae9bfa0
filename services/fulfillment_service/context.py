"""Per-request dependencies for the handoff protocol.

Everything the core operations need (session, clock, payout gateway,
settings) travels in one FulfillmentContext instead of module globals.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from fastapi import Depends
from libs.common.config import Settings, get_settings
from libs.common.datetime_utils import utc_now
from libs.db.session import get_async_db
from services.fulfillment_service.pricing import FeeSchedule
from services.fulfillment_service.stripe_client import (
    StripeConnectClient,
    get_payout_gateway,
)
from sqlalchemy.ext.asyncio import AsyncSession


@dataclass
class FulfillmentContext:
    db: AsyncSession
    gateway: StripeConnectClient
    settings: Settings = field(default_factory=get_settings)
    clock: Callable[[], datetime] = utc_now

    def now(self) -> datetime:
        return self.clock()

    @property
    def fees(self) -> FeeSchedule:
        return FeeSchedule.from_settings(self.settings)


def get_clock() -> Callable[[], datetime]:
    """Clock dependency; tests override it to pin 'now'."""
    return utc_now


async def get_fulfillment_context(
    db: AsyncSession = Depends(get_async_db),
    gateway: StripeConnectClient = Depends(get_payout_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> FulfillmentContext:
    return FulfillmentContext(
        db=db, gateway=gateway, settings=get_settings(), clock=clock
    )
