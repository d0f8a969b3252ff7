"""Webhook ingestion route for the WhatsApp channel."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request

from ..app_logging import mask_phone
from .deps import ApiServices, get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/api/whatsapp/webhook")
async def whatsapp_webhook(request: Request, services: ApiServices = Depends(get_services)) -> dict[str, Any]:
    """Validate the channel payload and enqueue it; processing happens in the worker."""

    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload must be a JSON object")

    job = services.channel.parse_incoming(payload)
    if job is None:
        return {"success": True, "queued": False}
    try:
        services.queue.enqueue(job)
    except Exception as exc:
        logger.exception("Failed to enqueue job %s", job.job_id)
        raise HTTPException(status_code=503, detail="Queue unavailable") from exc
    logger.info("Queued job %s from %s", job.job_id, mask_phone(job.from_address))
    return {"success": True, "queued": True, "jobId": job.job_id}
