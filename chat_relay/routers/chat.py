import asyncio
import contextlib

import structlog
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as PydanticValidationError

from chat_relay.errors import ChatError, PartialDeliveryError, ValidationError
from chat_relay.schemas.message import AckFrame, ErrorEvent, NackFrame, SendFrame, SendMessageRequest
from chat_relay.services.delivery_service import DeliveryCoordinator
from chat_relay.utils.cursor import decode_cursor
from chat_relay.utils.dependencies import get_current_user_id, get_delivery


logger = structlog.get_logger()

router = APIRouter(prefix="/messages", tags=["chat"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def send_message(body: SendMessageRequest, current_user_id: str = Depends(get_current_user_id), delivery: DeliveryCoordinator = Depends(get_delivery)):
    # PartialDeliveryError is turned into a 202 by the app-level handler
    receipt = await delivery.send(current_user_id, body.to_id, body.text)
    return {**receipt.model_dump(mode="json"), "status": "delivered"}


async def _forward(websocket: WebSocket, stream) -> None:
    async for event in stream:
        await websocket.send_text(event.model_dump_json())
        if isinstance(event, ErrorEvent):
            # client must reconnect with event.cursor
            await websocket.close(code=4500)
            return


async def _handle_frame(websocket: WebSocket, delivery: DeliveryCoordinator, user_id: str, peer_id: str, data: str) -> None:
    try:
        frame = SendFrame.model_validate_json(data)
    except PydanticValidationError as exc:
        await websocket.send_text(NackFrame(error=ValidationError.code, detail=str(exc)).model_dump_json())
        return
    try:
        receipt = await delivery.send(user_id, peer_id, frame.text)
        ack = AckFrame(client_message_id=frame.client_message_id, receipt=receipt)
    except PartialDeliveryError as exc:
        ack = AckFrame(
            client_message_id=frame.client_message_id,
            status="partial",
            receipt=exc.receipt,
            failures=[f.to_dict() for f in exc.failures],
        )
    except ChatError as exc:
        await websocket.send_text(NackFrame(client_message_id=frame.client_message_id, error=exc.code, detail=exc.detail).model_dump_json())
        return
    await websocket.send_text(ack.model_dump_json())


@router.websocket("/ws/conversations/{peer_id}")
async def conversation_socket(websocket: WebSocket, peer_id: str):
    state = websocket.app.state
    user_id = state.auth.current_user_id(websocket)
    if not user_id:
        await websocket.close(code=4401)
        return
    cursor = websocket.query_params.get("cursor")
    try:
        decode_cursor(cursor)
    except ValidationError:
        await websocket.close(code=4400)
        return

    # the listener is registered only once accept() has succeeded
    await websocket.accept()
    stream = await state.subscriptions.subscribe(user_id, peer_id, cursor)
    forward_task = asyncio.create_task(_forward(websocket, stream))
    try:
        while True:
            data = await websocket.receive_text()
            await _handle_frame(websocket, state.delivery, user_id, peer_id, data)
    except WebSocketDisconnect:
        logger.debug("Conversation socket closed", user_id=user_id, peer_id=peer_id)
    finally:
        await _close_stream(stream, forward_task)


@router.websocket("/ws/inbox")
async def inbox_socket(websocket: WebSocket):
    state = websocket.app.state
    user_id = state.auth.current_user_id(websocket)
    if not user_id:
        await websocket.close(code=4401)
        return

    await websocket.accept()
    stream = await state.subscriptions.subscribe_recents(user_id)
    forward_task = asyncio.create_task(_forward(websocket, stream))
    try:
        while True:
            # inbox is push-only; reading just notices the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Inbox socket closed", user_id=user_id)
    finally:
        await _close_stream(stream, forward_task)


async def _close_stream(stream, forward_task: "asyncio.Task[None]") -> None:
    await stream.cancel()
    forward_task.cancel()
    with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
        await forward_task
