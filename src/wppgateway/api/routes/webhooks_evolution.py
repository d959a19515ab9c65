"""Evolution API webhook route.

Each connected instance posts its events to /webhooks/evolution/{name},
where {name} is the provider-side instance name. The event is applied to
the store in a worker thread before the 200 is returned, so the Provider's
own redelivery covers requests that die mid-way.
"""

import hmac
from typing import Any

from fastapi import APIRouter, Header, Request, Response
from fastapi.concurrency import run_in_threadpool

from wppgateway.ingest.events import InvalidEventError, parse_event
from wppgateway.observability.correlation import get_correlation_id
from wppgateway.observability.logging import get_logger
from wppgateway.observability.redaction import safe_log_context
from wppgateway.settings import get_settings

from ..services import get_services

router = APIRouter(prefix="/webhooks/evolution", tags=["webhooks"])

logger = get_logger(__name__)


@router.post("/{instance_name}")
async def evolution_webhook(
    instance_name: str,
    request: Request,
    x_webhook_secret: str | None = Header(None, alias="X-Webhook-Secret"),
) -> dict:
    """Receive one Evolution API event.

    Returns:
        200 with the ingestion outcome, or status "ignored" for unknown instances.
        400 if the body is not JSON or not an event.
        401 if the webhook secret is configured and does not match.
    """
    correlation_id = get_correlation_id()

    expected_secret = get_settings().evolution_webhook_secret
    if expected_secret and (
        not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected_secret)
    ):
        logger.warning(
            "evolution webhook secret mismatch",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=401, content="unauthorized")

    try:
        payload: Any = await request.json()
    except Exception:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid json")

    try:
        event = parse_event(payload)
    except InvalidEventError as exc:
        logger.warning(
            "invalid evolution event",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, error=str(exc))},
        )
        return Response(status_code=400, content="invalid payload shape")

    services = get_services()
    instance = await run_in_threadpool(services.store.find_instance_by_provider_name, instance_name)
    if instance is None:
        logger.info(
            "webhook for unknown instance ignored",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id, event_type=type(event).__name__
                )
            },
        )
        return {"status": "ignored"}

    outcome = await run_in_threadpool(services.ingestor.ingest, instance, event)
    return {
        "status": "ok" if outcome is not None else "failed",
        "event": type(event).__name__,
        "outcome": outcome,
    }
