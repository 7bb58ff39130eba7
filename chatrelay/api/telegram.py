"""
Telegram endpoints.

POST /telegram/webhook   Bot API updates (public, secret header)
POST /telegram/register  Set the bot token and webhook URL (API key)

The webhook always answers ``{"ok": true}`` at once; the agent turn and the
reply run in a background task. Without an active bot token every update
is skipped.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from chatrelay.agent.channels.base import ChannelType
from chatrelay.api.deps import (
    fire_triggers,
    get_services,
    read_json,
    require_api_key,
    verify_telegram_secret,
)
from chatrelay.container import RelayServices
from chatrelay.errors import BadRequestError, TelegramError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/telegram", tags=["telegram"])

TELEGRAM_OWNER_ID = "telegram"
TELEGRAM_CHAT_TITLE = "Telegram"


@router.post("/webhook", dependencies=[Depends(verify_telegram_secret), Depends(fire_triggers)])
async def telegram_webhook(
    request: Request,
    services: RelayServices = Depends(get_services),
):
    body = await read_json(request)
    orchestrator = services.orchestrator
    cycle = orchestrator.begin(ChannelType.TELEGRAM)

    if not services.token_cell:
        orchestrator.skip(cycle, "no bot token")
        return {"ok": True}

    if not isinstance(body, dict):
        orchestrator.skip(cycle, "invalid payload")
        return {"ok": True}

    update_id = body.get("update_id")
    if update_id is not None and orchestrator.is_duplicate(f"telegram:{update_id}"):
        orchestrator.skip(cycle, "duplicate delivery")
        return {"ok": True}

    try:
        envelope = await services.telegram.receive(body)
    except BadRequestError as e:
        orchestrator.skip(cycle, e.message)
        return {"ok": True}
    except Exception as e:
        logger.exception("[TELEGRAM] Failed to normalise update")
        cycle.fail(f"{type(e).__name__}: {e}")
        return {"ok": True}

    if envelope is None:
        orchestrator.skip(cycle, "not a message")
        return {"ok": True}

    orchestrator.normalized(cycle, envelope)
    orchestrator.dispatch_background(
        services.telegram,
        envelope,
        cycle,
        owner_id=TELEGRAM_OWNER_ID,
        chat_title=TELEGRAM_CHAT_TITLE,
    )
    return {"ok": True}


@router.post("/register", dependencies=[Depends(require_api_key), Depends(fire_triggers)])
async def telegram_register(
    request: Request,
    services: RelayServices = Depends(get_services),
):
    body = await read_json(request) or {}
    bot_token = body.get("bot_token") if isinstance(body, dict) else None
    webhook_url = body.get("webhook_url") if isinstance(body, dict) else None
    if not bot_token or not webhook_url:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing bot_token or webhook_url",
        )

    try:
        result = await services.telegram.register_webhook(
            bot_token, webhook_url, services.settings.telegram_webhook_secret
        )
    except TelegramError as e:
        logger.error(f"[TELEGRAM] Register failed: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to register webhook",
        )

    return {"success": True, "result": result}
