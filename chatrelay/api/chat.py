"""
Web chat endpoints.

POST /chat streams the agent's reply as a UI message stream (SSE). The
user turn is persisted before the agent starts; the assistant turn when the
stream finishes, or with the text sent so far if the client stops it.

/chats endpoints manage the logged-in user's threads.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from chatrelay.agent.channels.base import ChannelType
from chatrelay.agent.channels.web_channel import STREAM_HEADERS
from chatrelay.api.deps import fire_triggers, get_current_user, get_services, read_json
from chatrelay.container import RelayServices
from chatrelay.db.models import User
from chatrelay.errors import BadRequestError
from chatrelay.schemas import ChatMessageResponse, ChatRename, ChatResponse, DeleteResult

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


@router.post("/chat", dependencies=[Depends(get_current_user), Depends(fire_triggers)])
async def chat(
    request: Request,
    user: User = Depends(get_current_user),
    services: RelayServices = Depends(get_services),
) -> StreamingResponse:
    body = await read_json(request)
    orchestrator = services.orchestrator
    cycle = orchestrator.begin(ChannelType.WEB)

    try:
        envelope = await services.web.receive(body)
    except BadRequestError as e:
        cycle.fail(e.message)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    orchestrator.normalized(cycle, envelope)
    logger.info(f"[CHAT] {user.email} -> thread {envelope.thread_id}")

    deltas = orchestrator.chat_stream(cycle, envelope, owner_id=user.id)
    return StreamingResponse(
        services.web.encode_stream(deltas),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )


# ── Thread management ────────────────────────────────────

async def _owned_thread(services: RelayServices, chat_id: str, user: User):
    chat = await services.store.get_thread(chat_id, owner_id=user.id)
    if chat is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    return chat


@router.get("/chats", response_model=List[ChatResponse])
async def list_chats(
    user: User = Depends(get_current_user),
    services: RelayServices = Depends(get_services),
):
    return await services.store.list_threads(user.id)


@router.get("/chats/{chat_id}/messages", response_model=List[ChatMessageResponse])
async def get_chat_messages(
    chat_id: str,
    user: User = Depends(get_current_user),
    services: RelayServices = Depends(get_services),
):
    await _owned_thread(services, chat_id, user)
    return await services.store.get_turns(chat_id)


@router.patch("/chats/{chat_id}", response_model=ChatResponse)
async def rename_chat(
    chat_id: str,
    body: ChatRename,
    user: User = Depends(get_current_user),
    services: RelayServices = Depends(get_services),
):
    await _owned_thread(services, chat_id, user)
    await services.store.update_title(chat_id, body.title.strip())
    return await services.store.get_thread(chat_id)


@router.delete("/chats/{chat_id}", response_model=DeleteResult)
async def delete_chat(
    chat_id: str,
    user: User = Depends(get_current_user),
    services: RelayServices = Depends(get_services),
):
    await _owned_thread(services, chat_id, user)
    deleted = await services.store.delete_thread(chat_id)
    return DeleteResult(deleted=int(deleted))


@router.delete("/chats", response_model=DeleteResult)
async def delete_all_chats(
    user: User = Depends(get_current_user),
    services: RelayServices = Depends(get_services),
):
    return DeleteResult(deleted=await services.store.delete_all_threads(user.id))
