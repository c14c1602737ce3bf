"""
Automation API Endpoints
Trigger ingestion, run administration and provider webhooks.

The routes are thin: each one builds a service over the request's session
and maps domain exceptions to HTTP status codes.
"""
import logging
import secrets
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from lead_engine.modules.automation.constants import ProviderName, WebhookKind
from lead_engine.modules.automation.repositories.message_log_repository import MessageLogRepository
from lead_engine.modules.automation.repositories.sequence_run_repository import SequenceRunRepository
from lead_engine.modules.automation.schemas.automation_schemas import (
    LeadLifecycleEvent,
    MessageLogItem,
    RunActionRequest,
    RunDetail,
    TriggerEvent,
    TriggerResponse,
    WebhookResponse,
)
from lead_engine.modules.automation.services.inbound_processor import InboundProcessor
from lead_engine.modules.automation.services.sequence_run_manager import SequenceRunManager
from lead_engine.modules.automation.services.trigger_listener import TriggerListener
from lead_engine.shared.core.config import settings
from lead_engine.shared.db.session import get_db
from lead_engine.shared.utils.exceptions import ConflictError, EntityNotFoundError

router = APIRouter()
logger = logging.getLogger("automation_api")


# ============================================
# DEPENDENCIES
# ============================================

def get_scheduler(request: Request):
    """Scheduler started by the app lifespan (None when disabled)."""
    return getattr(request.app.state, "scheduler", None)


def verify_webhook_secret(request: Request) -> None:
    """
    Check X-Webhook-Secret (or a Bearer token) against WEBHOOK_SECRET.
    Verification is skipped when no secret is configured.
    """
    webhook_secret = settings.WEBHOOK_SECRET
    if not webhook_secret:
        return

    provided = request.headers.get("X-Webhook-Secret") or request.headers.get("Authorization") or ""
    if provided.startswith("Bearer "):
        provided = provided[7:]

    # Constant-time comparison
    if not provided or not secrets.compare_digest(provided.encode(), webhook_secret.encode()):
        client = request.client.host if request.client else "unknown"
        logger.warning(f"Webhook rejected: invalid or missing secret from {client}")
        raise HTTPException(status_code=401, detail="Unauthorized webhook request")


def _parse_provider(provider: str) -> ProviderName:
    try:
        return ProviderName(provider.upper())
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown provider '{provider}'")


async def _read_webhook_body(request: Request) -> Optional[Dict[str, Any]]:
    """Form-encoded (Twilio) or JSON body. None if it cannot be read."""
    content_type = request.headers.get("content-type", "")
    try:
        if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
            form = await request.form()
            return dict(form)
        body = await request.json()
    except Exception as e:
        logger.error(f"Unreadable webhook body: {e}")
        return None
    return body if isinstance(body, dict) else None


# ============================================
# TRIGGERS
# ============================================

@router.post("/triggers", response_model=TriggerResponse, summary="Ingest a lead lifecycle trigger")
async def ingest_trigger(
    event: TriggerEvent,
    db: AsyncSession = Depends(get_db),
    scheduler=Depends(get_scheduler)
):
    """
    Start Sequence Runs for a lead.

    - MANUAL: requires sequenceId
    - LEAD_CREATED / STAGE_CHANGED: sequenceId optional; without it every
      active sequence listening for the trigger is started
    """
    listener = TriggerListener(db, wake_scheduler=scheduler.wake if scheduler else None)
    try:
        result = await listener.handle_trigger(event)
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except EntityNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return TriggerResponse(success=True, **result)


@router.post("/lead-events/removed", summary="Cancel runs of a deleted or reassigned lead")
async def lead_removed(event: LeadLifecycleEvent, db: AsyncSession = Depends(get_db)):
    cancelled = await TriggerListener(db).handle_lead_removed(event)
    return {"success": True, "cancelled_run_ids": cancelled}


# ============================================
# RUN ADMINISTRATION
# ============================================

@router.get("/runs/{run_id}", response_model=RunDetail, summary="Get a run and its message log")
async def get_run(run_id: int, db: AsyncSession = Depends(get_db)):
    run = await SequenceRunRepository(db).get_by_id(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")

    messages = await MessageLogRepository(db).list_for_run(run_id)
    return RunDetail(
        **{k: v for k, v in run.items() if k in RunDetail.model_fields},
        messages=[MessageLogItem(**{k: v for k, v in m.items() if k in MessageLogItem.model_fields}) for m in messages]
    )


async def _run_action(db: AsyncSession, run_id: int, action: str, reason: str, scheduler=None) -> Dict[str, Any]:
    manager = SequenceRunManager(db)
    try:
        if action == "pause":
            await manager.pause(run_id, reason)
        elif action == "cancel":
            await manager.cancel(run_id, reason)
        else:
            await manager.resume(run_id)
        await db.commit()
    except EntityNotFoundError as e:
        await db.rollback()
        raise HTTPException(status_code=404, detail=e.message)
    except ConflictError as e:
        await db.rollback()
        raise HTTPException(status_code=409, detail=e.message)

    if action == "resume" and scheduler:
        scheduler.wake()
    run = await SequenceRunRepository(db).get_by_id(run_id)
    return {"success": True, "run_id": run_id, "status": run["status"] if run else None}


@router.post("/runs/{run_id}/pause", summary="Pause an ACTIVE run")
async def pause_run(run_id: int, request: RunActionRequest = RunActionRequest(), db: AsyncSession = Depends(get_db)):
    return await _run_action(db, run_id, "pause", request.reason)


@router.post("/runs/{run_id}/cancel", summary="Cancel an ACTIVE or PAUSED run")
async def cancel_run(run_id: int, request: RunActionRequest = RunActionRequest(), db: AsyncSession = Depends(get_db)):
    return await _run_action(db, run_id, "cancel", request.reason)


@router.post("/runs/{run_id}/resume", summary="Resume a PAUSED run")
async def resume_run(run_id: int, db: AsyncSession = Depends(get_db), scheduler=Depends(get_scheduler)):
    return await _run_action(db, run_id, "resume", "", scheduler)


# ============================================
# PROVIDER WEBHOOKS
# ============================================

async def _handle_webhook(provider: str, kind: WebhookKind, request: Request, db: AsyncSession) -> WebhookResponse:
    provider_name = _parse_provider(provider)
    payload = await _read_webhook_body(request)
    if payload is None:
        # Acknowledge so the provider does not retry a body we can never parse
        return WebhookResponse(success=False, message="Invalid payload")

    logger.info(f"Webhook received: provider={provider_name.value}, kind={kind.value}")
    result = await InboundProcessor(db).handle_webhook(provider_name, kind, payload)
    if not result.get("success"):
        logger.warning(f"Webhook not processed: {result.get('message')}")
    return WebhookResponse(**result)


@router.post(
    "/webhooks/{provider}/inbound",
    response_model=WebhookResponse,
    dependencies=[Depends(verify_webhook_secret)],
    summary="Inbound message webhook"
)
async def inbound_webhook(provider: str, request: Request, db: AsyncSession = Depends(get_db)):
    return await _handle_webhook(provider, WebhookKind.INBOUND, request, db)


@router.post(
    "/webhooks/{provider}/status",
    response_model=WebhookResponse,
    dependencies=[Depends(verify_webhook_secret)],
    summary="Delivery status webhook"
)
async def status_webhook(provider: str, request: Request, db: AsyncSession = Depends(get_db)):
    return await _handle_webhook(provider, WebhookKind.STATUS, request, db)


# ============================================
# SCHEDULER
# ============================================

@router.get("/scheduler/status", summary="Scheduler loop status")
async def scheduler_status(scheduler=Depends(get_scheduler)):
    if scheduler is None:
        return {"enabled": False, "running": False}
    return {"enabled": True, **scheduler.get_status()}
