from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect, status

from .access_gate import InMemoryTransactionOracle, TransactionStatusOracle
from .change_feed import FeedSubscription, InMemoryChangeFeed
from .config import Settings, get_settings
from .contact_detection import classify
from .conversations import ConversationService
from .errors import ChannelDisconnected, GateError, NotFoundError, TransientWriteError, ValidationError
from .identity import InMemoryCatalogDirectory, InMemoryIdentityDirectory
from .inbox import ThreadSummary
from .models import (
    ClassifyRequest,
    ClassifyResponse,
    CreateThreadRequest,
    FeedEnvelope,
    GateStatusResponse,
    InboxResponse,
    MessageItem,
    MessageListResponse,
    OtherPartyItem,
    PostMessageRequest,
    PostMessageResponse,
    PresetCatalogResponse,
    ThreadDetailResponse,
    ThreadItem,
    ThreadSummaryItem,
)
from .thread_store import MessageRecord, ThreadRecord, ThreadRepository, create_thread_repository

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/conversations", tags=["conversations"])


def _create_service(
    settings: Settings,
    *,
    repository: ThreadRepository,
    oracle: TransactionStatusOracle,
) -> ConversationService:
    return ConversationService(
        repository=repository,
        feed=change_feed,
        oracle=oracle,
        identities=identity_directory,
        catalog=catalog_directory,
        settings=settings,
    )


change_feed = InMemoryChangeFeed()
transaction_oracle = InMemoryTransactionOracle()
identity_directory = InMemoryIdentityDirectory()
catalog_directory = InMemoryCatalogDirectory()
thread_repo: ThreadRepository = create_thread_repository(
    backend=_settings.thread_store_backend,
    database_url=_settings.database_url,
)
conversation_service = _create_service(_settings, repository=thread_repo, oracle=transaction_oracle)


def reset_runtime_state_for_tests() -> None:
    conversation_service.reset()
    change_feed.disconnect(reason="runtime reset")
    transaction_oracle.reset()
    identity_directory.reset()
    catalog_directory.reset()


def _require_user(request: Request) -> str:
    # Authentication happens upstream; the gateway forwards the resolved user id.
    user_id = request.headers.get("X-User-Id", "").strip()
    if not user_id:
        raise HTTPException(401, "user identity required")
    return user_id


def _message_item(record: MessageRecord) -> MessageItem:
    return MessageItem(
        message_id=record.message_id,
        thread_id=record.thread_id,
        sender_id=record.sender_id,
        content=record.content,
        sent_at=record.sent_at,
        sequence=record.sequence,
    )


def _thread_item(record: ThreadRecord, participant_ids: tuple[str, str]) -> ThreadItem:
    return ThreadItem(
        thread_id=record.thread_id,
        subject_ref=record.subject_ref,
        participant_ids=list(participant_ids),
        created_at=record.created_at,
    )


def _summary_item(summary: ThreadSummary) -> ThreadSummaryItem:
    other = summary.other_party
    return ThreadSummaryItem(
        thread_id=summary.thread_id,
        subject_ref=summary.subject_ref,
        subject_label=summary.subject_label,
        other_party=OtherPartyItem(
            kind=other.kind,
            user_id=other.user_id,
            display_name=other.display_name,
            avatar_url=other.avatar_url,
        ),
        last_message_preview=summary.last_message_preview,
        last_message_at=summary.last_message_at,
        created_at=summary.created_at,
    )


@router.get("/presets", response_model=PresetCatalogResponse)
def list_presets() -> PresetCatalogResponse:
    return PresetCatalogResponse(items=list(_settings.preset_questions))


@router.post("/classify", response_model=ClassifyResponse)
def classify_text(payload: ClassifyRequest) -> ClassifyResponse:
    result = classify(payload.text)
    return ClassifyResponse(
        text=payload.text,
        flagged=result.flagged,
        advisory=result.advisory,
        reasons=list(result.reasons),
    )


@router.post("/threads", response_model=ThreadItem, status_code=status.HTTP_201_CREATED)
def create_thread(payload: CreateThreadRequest, request: Request) -> ThreadItem:
    user_id = _require_user(request)
    try:
        thread = conversation_service.start_thread(
            requester_id=user_id,
            participant_id=payload.participant_id,
            subject_ref=payload.subject_ref,
        )
        participants = conversation_service.participants(thread.thread_id, viewer_id=user_id)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except TransientWriteError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return _thread_item(thread, participants)


@router.get("/threads", response_model=InboxResponse)
def list_inbox(request: Request) -> InboxResponse:
    user_id = _require_user(request)
    try:
        summaries = conversation_service.inbox(user_id)
    except TransientWriteError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return InboxResponse(items=[_summary_item(summary) for summary in summaries])


@router.get("/threads/{thread_id}", response_model=ThreadDetailResponse)
def get_thread_detail(thread_id: str, request: Request) -> ThreadDetailResponse:
    user_id = _require_user(request)
    try:
        detail = conversation_service.thread_detail(thread_id, viewer_id=user_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except TransientWriteError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return ThreadDetailResponse(
        thread=_thread_item(detail.thread, detail.participant_ids),
        mode=detail.mode,
        available_presets=detail.available_presets,
        messages=[_message_item(message) for message in detail.messages],
    )


@router.get("/threads/{thread_id}/messages", response_model=MessageListResponse)
def list_messages(thread_id: str, request: Request) -> MessageListResponse:
    user_id = _require_user(request)
    try:
        messages = conversation_service.history(thread_id, viewer_id=user_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except TransientWriteError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return MessageListResponse(items=[_message_item(message) for message in messages])


@router.post("/threads/{thread_id}/messages", response_model=PostMessageResponse, status_code=status.HTTP_201_CREATED)
def post_message(thread_id: str, payload: PostMessageRequest, request: Request) -> PostMessageResponse:
    user_id = _require_user(request)
    try:
        posted = conversation_service.post_message(thread_id=thread_id, sender_id=user_id, content=payload.content)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except GateError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except TransientWriteError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return PostMessageResponse(
        message=_message_item(posted.message),
        mode=posted.mode,
        flagged=posted.advisory.flagged,
        advisory=posted.advisory.advisory,
    )


@router.get("/threads/{thread_id}/gate", response_model=GateStatusResponse)
def get_gate_status(thread_id: str, request: Request) -> GateStatusResponse:
    user_id = _require_user(request)
    try:
        mode = conversation_service.gate_mode(thread_id, viewer_id=user_id)
        presets = conversation_service.available_presets(thread_id, viewer_id=user_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except TransientWriteError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return GateStatusResponse(thread_id=thread_id, mode=mode, available_presets=presets)


async def _drain_client(websocket: WebSocket) -> None:
    while True:
        incoming = await websocket.receive()
        if incoming["type"] == "websocket.disconnect":
            return


async def _pump_feed(websocket: WebSocket, subscription: FeedSubscription) -> None:
    while True:
        message = await subscription.get()
        envelope = FeedEnvelope(type="message.created", data=_message_item(message).model_dump(mode="json"))
        await websocket.send_json(envelope.model_dump(mode="json"))


@router.websocket("/threads/{thread_id}/feed")
async def thread_feed(websocket: WebSocket, thread_id: str) -> None:
    user_id = (websocket.query_params.get("user_id") or websocket.headers.get("x-user-id") or "").strip()
    if not user_id:
        await websocket.close(code=4401)
        return
    try:
        conversation_service.participants(thread_id, viewer_id=user_id)
    except NotFoundError:
        await websocket.close(code=4404)
        return

    await websocket.accept()
    subscription = change_feed.subscribe(thread_id)
    receiver = asyncio.create_task(_drain_client(websocket))
    pump = asyncio.create_task(_pump_feed(websocket, subscription))
    try:
        await websocket.send_json(FeedEnvelope(type="subscribed", data={"thread_id": thread_id}).model_dump(mode="json"))
        done, pending = await asyncio.wait({receiver, pump}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        if pump in done and isinstance(pump.exception(), ChannelDisconnected):
            logger.info("closing feed socket for thread %s: change feed dropped", thread_id)
            await websocket.close(code=1012)
    except WebSocketDisconnect:
        pass
    finally:
        receiver.cancel()
        pump.cancel()
        change_feed.unsubscribe(subscription)
