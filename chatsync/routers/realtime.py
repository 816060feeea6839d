"""WebSocket endpoint bridging one client to a conversation coordinator."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Coroutine

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from ..clients.base import ChatBackend
from ..clients.factory import get_socket_backend
from ..errors import AuthenticationError, ChatSyncError, SendFailed
from ..schemas import ClientFrame, ConnectionStatus, Message
from ..services import ConversationSwitchCoordinator, CoordinatorState, decode_access_token

router = APIRouter()
logger = logging.getLogger(__name__)

_UNAUTHORIZED_CLOSE_CODE = 4401


class ConversationSocket:
    """Translate client frames into coordinator calls and push its state back."""

    def __init__(self, websocket: WebSocket, coordinator: ConversationSwitchCoordinator) -> None:
        self._websocket = websocket
        self._coordinator = coordinator
        self._outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._tasks: set[asyncio.Task] = set()
        coordinator.on_status(self._on_status)
        coordinator.store.subscribe(self._on_messages)

    def push(self, frame: dict[str, Any]) -> None:
        self._outbox.put_nowait(frame)

    async def pump(self) -> None:
        while True:
            frame = await self._outbox.get()
            await self._websocket.send_json(frame)

    def spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def dispatch(self, raw: str) -> None:
        try:
            frame = ClientFrame.model_validate(json.loads(raw))
        except json.JSONDecodeError:
            self.push({"type": "error", "detail": "Frames must be JSON objects"})
            return
        except ValidationError as exc:
            self.push({"type": "error", "detail": "Invalid frame", "errors": exc.errors(include_url=False)})
            return

        if frame.type == "ping":
            self.push({"type": "pong"})
        elif frame.type == "open":
            if not frame.conversation_id:
                self.push({"type": "error", "detail": "conversation_id is required"})
                return
            self.spawn(self._guard(self._coordinator.open_conversation(frame.conversation_id)))
        elif frame.type == "close":
            self.spawn(self._guard(self._coordinator.close_conversation()))
        elif frame.type == "retry":
            self.spawn(self._guard(self._coordinator.retry()))
        elif frame.type == "send":
            self.spawn(self._send(frame))
        elif frame.type == "resend":
            if not frame.local_id:
                self.push({"type": "error", "detail": "local_id is required"})
                return
            self.spawn(self._resend(frame.local_id))

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.wait(set(self._tasks))
        await self._coordinator.teardown()

    async def _guard(self, operation: Coroutine[Any, Any, Any]) -> None:
        try:
            await operation
        except ChatSyncError as exc:
            self.push({"type": "error", "detail": exc.detail})

    async def _send(self, frame: ClientFrame) -> None:
        try:
            message = await self._coordinator.send_message(
                frame.content or "",
                frame.message_type,
                frame.timer_seconds,
                frame.media_url,
            )
        except SendFailed as exc:
            self.push({"type": "send_failed", "local_id": exc.local_id, "detail": exc.detail})
        except ChatSyncError as exc:
            self.push({"type": "error", "detail": exc.detail})
        else:
            self.push({"type": "sent", "message": _serialize(message)})

    async def _resend(self, local_id: str) -> None:
        try:
            message = await self._coordinator.resend(local_id)
        except SendFailed as exc:
            self.push({"type": "send_failed", "local_id": exc.local_id, "detail": exc.detail})
        except ChatSyncError as exc:
            self.push({"type": "error", "detail": exc.detail})
        else:
            self.push({"type": "sent", "message": _serialize(message)})

    def _on_status(
        self,
        connection: ConnectionStatus,
        state: CoordinatorState,
        error: ChatSyncError | None,
    ) -> None:
        self.push(
            {
                "type": "status",
                "status": connection.value,
                "state": state.value,
                "conversation_id": self._coordinator.conversation_id,
                "detail": error.detail if error is not None else None,
            }
        )

    def _on_messages(self, snapshot: tuple[Message, ...]) -> None:
        self.push(
            {
                "type": "messages",
                "conversation_id": self._coordinator.store.active_conversation_id,
                "version": self._coordinator.store.version,
                "messages": [_serialize(message) for message in snapshot],
            }
        )


def _serialize(message: Message) -> dict[str, Any]:
    return message.model_dump(mode="json")


@router.websocket("/ws/conversations")
async def conversation_updates(
    websocket: WebSocket,
    token: str | None = Query(None),
    backend: ChatBackend = Depends(get_socket_backend),
) -> None:
    """Serve one client's conversation focus, history and live messages."""

    try:
        user_id = decode_access_token(token or "")
    except AuthenticationError:
        await websocket.close(code=_UNAUTHORIZED_CLOSE_CODE)
        return

    await websocket.accept()
    socket = ConversationSocket(websocket, ConversationSwitchCoordinator(backend, user_id=user_id))
    pump = asyncio.create_task(socket.pump())
    socket.push({"type": "ready", "user_id": user_id})
    logger.info("Conversation socket opened for user %s", user_id)
    try:
        while True:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                break
            await socket.dispatch(raw)
    finally:
        await socket.close()
        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)
        logger.info("Conversation socket closed for user %s", user_id)


__all__ = ["ConversationSocket", "router"]
