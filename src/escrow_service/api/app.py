from collections.abc import Awaitable, Callable

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from escrow_service.api import admin, payments, webhooks
from escrow_service.application.engines import Engines
from escrow_service.domain.exceptions import PaymentError


logger = structlog.get_logger()

HealthCheck = Callable[[], Awaitable[bool]]

STATUS_BY_ERROR_CODE = {
    "NOT_FOUND": 404,
    "INVALID_TRANSITION": 409,
    "INVALID_STATE": 409,
    "LOCK_CONFLICT": 409,
    "CONCURRENT_MODIFICATION": 409,
    "DUPLICATE_DISPUTE": 409,
    "DUPLICATE_GATEWAY_REFERENCE": 409,
    "INVALID_AMOUNT": 422,
    "AMOUNT_MISMATCH": 422,
    "INVALID_SIGNATURE": 400,
    "GATEWAY_ERROR": 502,
    "COORDINATOR_UNAVAILABLE": 503,
}


async def payment_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, PaymentError):
        raise exc
    status_code = STATUS_BY_ERROR_CODE.get(exc.error_code, 400)
    log = logger.bind(path=request.url.path, error_code=exc.error_code, payment_id=exc.payment_id)
    if status_code >= 500:
        log.error("request_failed", error=str(exc))
    else:
        log.info("request_rejected", error=str(exc))
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": exc.error_code,
                "message": str(exc),
                "payment_id": exc.payment_id,
            }
        },
    )


def create_app(engines: Engines, health_checks: dict[str, HealthCheck] | None = None) -> FastAPI:
    """Build the public HTTP application: gateway webhooks plus the admin surface."""
    app = FastAPI(title="Escrow Service")
    app.state.engines = engines
    checks = health_checks or {}

    app.add_exception_handler(PaymentError, payment_error_handler)
    app.include_router(webhooks.router)
    app.include_router(payments.payments_router)
    app.include_router(payments.disputes_router)
    app.include_router(admin.router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/ready")
    async def ready() -> JSONResponse:
        results = {name: await check() for name, check in checks.items()}
        ok = all(results.values())
        return JSONResponse(
            status_code=200 if ok else 503,
            content={"status": "ready" if ok else "unavailable", "checks": results},
        )

    return app
