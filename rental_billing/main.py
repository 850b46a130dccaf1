from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rental_billing.core.errors import install_error_handlers
from rental_billing.core.logging import setup_logging
from rental_billing.core.settings import S
from rental_billing.metrics import metrics_endpoint, metrics_middleware, set_app_info
from rental_billing.routers.billing import router as billing_router


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title="Rental Billing", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if S.metrics_enabled:
        app.middleware("http")(metrics_middleware)
        set_app_info(app.title, app.version)
        app.get("/metrics")(metrics_endpoint)

    install_error_handlers(app)

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    app.include_router(billing_router)

    return app

app = create_app()
