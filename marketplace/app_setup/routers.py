"""
Registre central des routers.
- API v1: checkout, cron, annulation acheteur, payments (webhook), market boxes (vendeur, acheteur)
- Health: health_router
"""
from fastapi import FastAPI
from marketplace.checkout import views as checkout_views
from marketplace.payments import views as payments_views
from marketplace.market_boxes import views as market_boxes_views
from marketplace.health.router import router as health_router

def register_routers(app: FastAPI) -> None:
    # API v1
    app.include_router(checkout_views.router)
    app.include_router(checkout_views.cron_router)
    app.include_router(checkout_views.buyer_orders_router)
    app.include_router(payments_views.router)
    app.include_router(market_boxes_views.vendor_router)
    app.include_router(market_boxes_views.buyer_router)
    app.include_router(market_boxes_views.router)
    # Health & monitoring
    app.include_router(health_router)
