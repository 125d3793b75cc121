import json
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from escrow_service.api.dependencies import EnginesDep


logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}})


@router.post("/gateway")
async def gateway_webhook(
    request: Request,
    engines: EnginesDep,
    x_razorpay_signature: Annotated[str | None, Header()] = None,
    x_razorpay_event_id: Annotated[str | None, Header()] = None,
) -> JSONResponse:
    """Receive a gateway event.

    The signature is checked over the raw body before anything is parsed.
    Once verified, the gateway always gets a 200 so it stops redelivering;
    processing failures are handled on our side.
    """
    raw_body = await request.body()

    if not x_razorpay_signature or not engines.gateway.verify_webhook_signature(raw_body, x_razorpay_signature):
        logger.warning("webhook_signature_invalid", has_signature=bool(x_razorpay_signature))
        return _error(401, "INVALID_SIGNATURE", "Webhook signature verification failed")

    try:
        body: Any = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("webhook_body_malformed", size=len(raw_body))
        return _error(400, "MALFORMED_BODY", "Webhook body is not valid JSON")

    if not isinstance(body, dict) or not isinstance(body.get("event"), str):
        logger.warning("webhook_body_malformed", size=len(raw_body))
        return _error(400, "MALFORMED_BODY", "Webhook body has no event type")

    payload = body.get("payload")
    outcome = await engines.webhooks.ingest(
        body["event"],
        x_razorpay_event_id or body.get("id"),
        payload if isinstance(payload, dict) else {},
    )
    return JSONResponse(
        status_code=200,
        content={"status": "accepted", "event": outcome.event_type, "result": outcome.result},
    )
