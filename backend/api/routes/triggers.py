"""Inbound trigger endpoints — webhooks, chat and messaging bots.

Each POST hands the raw event to the TriggerDispatcher, which verifies
it and enqueues exactly one execution. A GET on the webhook URL only
describes the trigger.
"""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Header, Request
import logging

from api.schemas.workflow import ChatRequest, EnqueueResponse
from app.dependencies import get_acting_user, get_dispatcher
from triggers.dispatcher import TELEGRAM_SECRET_HEADER, TriggerDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(tags=["triggers"])


@router.post("/{workflow_id}/webhook", response_model=EnqueueResponse)
async def receive_webhook(
    workflow_id: str,
    request: Request,
    dispatcher: TriggerDispatcher = Depends(get_dispatcher),
) -> EnqueueResponse:
    """Webhook call. With a configured secret the body must be HMAC-SHA256 signed."""
    raw_body = await request.body()
    result = await dispatcher.handle_webhook(
        workflow_id,
        raw_body,
        headers=dict(request.headers),
        query=dict(request.query_params),
        method=request.method,
    )
    return EnqueueResponse(**result.to_dict())


@router.get("/{workflow_id}/webhook")
async def describe_webhook(
    workflow_id: str,
    dispatcher: TriggerDispatcher = Depends(get_dispatcher),
) -> dict:
    """Trigger metadata and whether a POST would be accepted. Runs nothing."""
    return await dispatcher.describe_webhook(workflow_id)


@router.post("/{workflow_id}/chat", response_model=EnqueueResponse)
async def receive_chat(
    workflow_id: str,
    request: ChatRequest,
    user_id: Optional[str] = Depends(get_acting_user),
    dispatcher: TriggerDispatcher = Depends(get_dispatcher),
) -> EnqueueResponse:
    result = await dispatcher.handle_chat(
        workflow_id,
        messages=[m.model_dump() for m in request.messages],
        message=request.message,
        user_id=user_id,
    )
    return EnqueueResponse(**result.to_dict())


@router.post("/{workflow_id}/bot/{platform}", response_model=EnqueueResponse)
async def receive_bot_update(
    workflow_id: str,
    platform: str,
    update: dict[str, Any] = Body(...),
    telegram_token: Optional[str] = Header(default=None, alias=TELEGRAM_SECRET_HEADER),
    bot_token: Optional[str] = Header(default=None, alias="X-Bot-Secret-Token"),
    dispatcher: TriggerDispatcher = Depends(get_dispatcher),
) -> EnqueueResponse:
    """Telegram/Discord style update for a messaging-bot workflow."""
    result = await dispatcher.handle_messaging_bot(
        workflow_id, platform, update, secret_token=telegram_token or bot_token
    )
    return EnqueueResponse(**result.to_dict())
