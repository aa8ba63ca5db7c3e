from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.core.database import get_db
from app.metrics import observe_webhook_event
from app.webhooks.schemas import BillingWebhookEnvelope, ESignatureWebhookEnvelope
from app.webhooks.service import webhook_ingestion_service

logger = logging.getLogger("app.webhooks")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _ingest(
    request: Request,
    db: Session,
    provider: str,
    schema: type[BaseModel],
    handler: Callable[[Session, Any], str],
) -> JSONResponse | dict[str, bool]:
    try:
        envelope = schema.model_validate(await request.json())
        outcome = await run_in_threadpool(handler, db, envelope)
    except Exception as exc:
        await run_in_threadpool(db.rollback)
        observe_webhook_event(provider, "error")
        logger.exception("webhook.failed", extra={"provider": provider, "error": str(exc)})
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    observe_webhook_event(provider, outcome)
    logger.info("webhook.received", extra={"provider": provider, "outcome": outcome})
    return {"success": True}


@router.post("/billing")
async def billing_webhook(request: Request, db: Session = Depends(get_db)) -> Any:
    return await _ingest(request, db, "billing", BillingWebhookEnvelope, webhook_ingestion_service.ingest_billing)


@router.post("/esignature")
async def esignature_webhook(request: Request, db: Session = Depends(get_db)) -> Any:
    return await _ingest(request, db, "esignature", ESignatureWebhookEnvelope, webhook_ingestion_service.ingest_esignature)
