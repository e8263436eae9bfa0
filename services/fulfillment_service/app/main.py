"""FastAPI application for the Fulfillment Service."""

from fastapi import FastAPI
from libs.common.middleware import add_request_logging
from services.fulfillment_service.errors import (
    FulfillmentError,
    fulfillment_error_handler,
)
from services.fulfillment_service.routers import (
    buyer_orders_router,
    market_boxes_router,
    vendor_fees_router,
    vendor_orders_router,
)


def create_app() -> FastAPI:
    """Create and configure the Fulfillment Service FastAPI app."""
    app = FastAPI(
        title="Fulfillment Service",
        version="0.1.0",
        description="Handoff confirmation and vendor payouts.",
    )
    add_request_logging(app)
    app.add_exception_handler(FulfillmentError, fulfillment_error_handler)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "fulfillment"}

    app.include_router(vendor_orders_router)
    app.include_router(buyer_orders_router)
    app.include_router(market_boxes_router)
    app.include_router(vendor_fees_router)

    return app


app = create_app()
