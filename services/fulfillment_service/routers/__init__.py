"""Routers package."""

from services.fulfillment_service.routers.buyer_orders import (
    router as buyer_orders_router,
)
from services.fulfillment_service.routers.market_boxes import (
    router as market_boxes_router,
)
from services.fulfillment_service.routers.vendor_fees import router as vendor_fees_router
from services.fulfillment_service.routers.vendor_orders import (
    router as vendor_orders_router,
)

__all__ = [
    "buyer_orders_router",
    "market_boxes_router",
    "vendor_fees_router",
    "vendor_orders_router",
]
