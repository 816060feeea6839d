"""Supabase backend: PostgREST over httpx and the realtime socket over aiohttp."""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
from datetime import datetime, timezone
from typing import Any, Mapping

import aiohttp
import httpx
from pydantic import ValidationError

from ..config import Settings, get_settings
from ..constants import CONVERSATIONS_TABLE, MESSAGES_TABLE, PROFILES_TABLE
from ..errors import BackendRequestError, NotFoundError, TransientError
from ..schemas import ChannelStatus, InsertEvent, MessageRow, MessageType
from .base import InsertCallback, StatusCallback

logger = logging.getLogger(__name__)

_PROFILE_COLUMNS = "id,username,display_name"
_MESSAGE_SELECT = f"*,sender:sender_id({_PROFILE_COLUMNS})"
_NOT_FOUND_STATUSES = {401, 403, 404, 406}
_TRANSIENT_STATUSES = {408, 425, 429}


def _raise_for_status(response: httpx.Response) -> None:
    status = response.status_code
    if status < 400:
        return
    detail = response.text[:200] if response.text else response.reason_phrase
    if status in _NOT_FOUND_STATUSES:
        raise NotFoundError(f"Backend refused access ({status}): {detail}")
    if status in _TRANSIENT_STATUSES or status >= 500:
        raise TransientError(f"Backend unavailable ({status}): {detail}")
    raise BackendRequestError(f"Backend rejected request ({status}): {detail}")


def _first(rows: Any) -> dict[str, Any] | None:
    if isinstance(rows, list):
        return rows[0] if rows else None
    if isinstance(rows, dict):
        return rows
    return None


class RealtimeChannel:
    """A single Phoenix channel joined on its own realtime socket."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        ws: aiohttp.ClientWebSocketResponse,
        topic: str,
        *,
        on_insert: InsertCallback,
        on_status: StatusCallback,
        heartbeat_seconds: float,
    ) -> None:
        self.topic = topic
        self._session = session
        self._ws = ws
        self._on_insert = on_insert
        self._on_status = on_status
        self._heartbeat_seconds = heartbeat_seconds
        self._refs = itertools.count(1)
        self._join_ref: str | None = None
        self._reader: asyncio.Task | None = None
        self._heartbeat: asyncio.Task | None = None
        self._closed = False

    def _next_ref(self) -> str:
        return str(next(self._refs))

    async def join(self, conversation_id: str, access_token: str | None) -> None:
        self._join_ref = self._next_ref()
        payload: dict[str, Any] = {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": [
                    {
                        "event": "INSERT",
                        "schema": "public",
                        "table": MESSAGES_TABLE,
                        "filter": f"group_chat_id=eq.{conversation_id}",
                    }
                ],
            }
        }
        if access_token:
            payload["access_token"] = access_token
        self._on_status(ChannelStatus.CONNECTING, None)
        await self._ws.send_json(
            {"topic": self.topic, "event": "phx_join", "payload": payload, "ref": self._join_ref}
        )
        self._reader = asyncio.create_task(self._read_loop())
        self._heartbeat = asyncio.create_task(self._heartbeat_loop())

    async def _read_loop(self) -> None:
        error: Exception | None = None
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.warning("Dropping malformed realtime frame on %s", self.topic)
                        continue
                    self.handle_frame(frame)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = self._ws.exception() or TransientError("Realtime socket error")
                    break
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                    break
        except aiohttp.ClientError as exc:
            error = exc
        if not self._closed:
            self._on_status(ChannelStatus.ERROR, TransientError(f"Realtime connection lost: {error or 'closed'}"))

    async def _heartbeat_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._heartbeat_seconds)
            try:
                await self._ws.send_json(
                    {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": self._next_ref()}
                )
            except (aiohttp.ClientError, ConnectionResetError):
                logger.warning("Realtime heartbeat failed on %s", self.topic)
                return

    def handle_frame(self, frame: Mapping[str, Any]) -> None:
        if frame.get("topic") != self.topic:
            return
        event = frame.get("event")
        payload = frame.get("payload") or {}

        if event == "phx_reply" and frame.get("ref") == self._join_ref:
            if payload.get("status") == "ok":
                self._on_status(ChannelStatus.ACTIVE, None)
            else:
                reason = payload.get("response") or payload.get("status")
                self._on_status(ChannelStatus.ERROR, TransientError(f"Channel join rejected: {reason}"))
        elif event == "postgres_changes":
            data = payload.get("data") or {}
            try:
                insert = InsertEvent(
                    type=data.get("type", ""),
                    table=data.get("table", ""),
                    record=MessageRow.model_validate(data.get("record") or {}),
                    commit_timestamp=data.get("commit_timestamp"),
                )
            except ValidationError:
                logger.warning("Ignoring malformed change event on %s", self.topic)
                return
            self._on_insert(insert)
        elif event == "system" and payload.get("status") == "error":
            self._on_status(ChannelStatus.ERROR, TransientError(payload.get("message") or "Realtime system error"))
        elif event == "phx_error":
            self._on_status(ChannelStatus.ERROR, TransientError("Realtime channel errored"))
        elif event == "phx_close":
            self._on_status(ChannelStatus.CLOSED, None)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in (self._heartbeat, self._reader):
            if task is not None:
                task.cancel()
        try:
            if not self._ws.closed:
                await self._ws.send_json(
                    {"topic": self.topic, "event": "phx_leave", "payload": {}, "ref": self._next_ref()}
                )
                await self._ws.close()
        except (aiohttp.ClientError, ConnectionResetError):
            logger.debug("Realtime socket for %s already gone", self.topic)
        finally:
            await self._session.close()


class SupabaseChatBackend:
    """Talk to a Supabase project on behalf of one signed-in user."""

    def __init__(
        self,
        url: str,
        anon_key: str,
        *,
        access_token: str | None = None,
        timeout: float = 10.0,
        heartbeat_seconds: float = 25.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = url.rstrip("/")
        self._anon_key = anon_key
        self._access_token = access_token
        self._timeout = timeout
        self._heartbeat_seconds = heartbeat_seconds
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings | None = None, *, access_token: str | None = None) -> "SupabaseChatBackend":
        settings = settings or get_settings()
        if not settings.supabase_url or not settings.supabase_anon_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_ANON_KEY must be set for the supabase backend")
        return cls(
            settings.supabase_url,
            settings.supabase_anon_key,
            access_token=access_token,
            timeout=settings.supabase_timeout,
            heartbeat_seconds=settings.realtime_heartbeat_seconds,
        )

    @property
    def realtime_url(self) -> str:
        scheme, _, rest = self._base_url.partition("://")
        ws_scheme = "wss" if scheme == "https" else "ws"
        return f"{ws_scheme}://{rest}/realtime/v1/websocket?apikey={self._anon_key}&vsn=1.0.0"

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {
            "apikey": self._anon_key,
            "Authorization": f"Bearer {self._access_token or self._anon_key}",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Mapping[str, Any] | None = None,
        payload: Any = None,
        prefer: str | None = None,
    ) -> Any:
        url = f"{self._base_url}/rest/v1/{table}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(
                    method, url, params=params, json=payload, headers=self._headers(prefer)
                )
        except httpx.HTTPError as exc:
            logger.warning("Supabase %s %s failed: %s", method, table, exc)
            raise TransientError(f"Backend unreachable: {exc}") from exc

        _raise_for_status(response)
        if not response.content:
            return None
        return response.json()

    async def fetch_messages(self, conversation_id: str, *, limit: int | None = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "select": _MESSAGE_SELECT,
            "group_chat_id": f"eq.{conversation_id}",
            "order": "created_at.desc" if limit is not None else "created_at.asc",
        }
        if limit is not None:
            params["limit"] = limit
        rows = await self._request("GET", MESSAGES_TABLE, params=params) or []
        if limit is not None:
            rows.reverse()
        return rows

    async def insert_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: MessageType = "text",
        timer_seconds: int | None = None,
        media_url: str | None = None,
    ) -> dict[str, Any]:
        conversation = await self.fetch_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")

        payload = {
            "sender_id": sender_id,
            "recipient_id": None,
            "content": content,
            "message_type": message_type,
            "timer_seconds": timer_seconds,
            "media_url": media_url,
            "group_chat_id": conversation_id,
            "group_members": conversation.get("member_ids") or [],
        }
        rows = await self._request(
            "POST",
            MESSAGES_TABLE,
            params={"select": _MESSAGE_SELECT},
            payload=payload,
            prefer="return=representation",
        )
        row = _first(rows)
        if row is None:
            raise BackendRequestError("Insert returned no row")

        try:
            await self._request(
                "PATCH",
                CONVERSATIONS_TABLE,
                params={"id": f"eq.{conversation_id}"},
                payload={"updated_at": datetime.now(timezone.utc).isoformat()},
            )
        except (TransientError, BackendRequestError, NotFoundError) as exc:
            logger.warning("Could not bump updated_at for %s: %s", conversation_id, exc)
        return row

    async def open_channel(
        self,
        conversation_id: str,
        *,
        on_insert: InsertCallback,
        on_status: StatusCallback,
    ) -> RealtimeChannel:
        session = aiohttp.ClientSession()
        try:
            ws = await session.ws_connect(self.realtime_url, timeout=self._timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            await session.close()
            raise TransientError(f"Realtime connect failed: {exc}") from exc
        except BaseException:
            # Cancelled by a switch while connecting.
            await session.close()
            raise

        channel = RealtimeChannel(
            session,
            ws,
            f"realtime:group-messages-{conversation_id}",
            on_insert=on_insert,
            on_status=on_status,
            heartbeat_seconds=self._heartbeat_seconds,
        )
        try:
            await channel.join(conversation_id, self._access_token)
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            await channel.close()
            raise TransientError(f"Realtime join failed: {exc}") from exc
        except BaseException:
            await channel.close()
            raise
        return channel

    async def fetch_profile(self, user_id: str) -> dict[str, Any] | None:
        rows = await self._request(
            "GET", PROFILES_TABLE, params={"select": _PROFILE_COLUMNS, "id": f"eq.{user_id}"}
        )
        return _first(rows)

    async def fetch_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        rows = await self._request(
            "GET", CONVERSATIONS_TABLE, params={"select": "*", "id": f"eq.{conversation_id}"}
        )
        return _first(rows)

    async def list_conversations(self, member_id: str) -> list[dict[str, Any]]:
        params = {
            "select": "*",
            "member_ids": f"cs.{{{member_id}}}",
            "order": "updated_at.desc",
        }
        return await self._request("GET", CONVERSATIONS_TABLE, params=params) or []

    async def create_conversation(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        rows = await self._request(
            "POST", CONVERSATIONS_TABLE, payload=dict(fields), prefer="return=representation"
        )
        row = _first(rows)
        if row is None:
            raise BackendRequestError("Create returned no row")
        return row

    async def update_conversation(self, conversation_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        payload = dict(fields)
        payload["updated_at"] = datetime.now(timezone.utc).isoformat()
        rows = await self._request(
            "PATCH",
            CONVERSATIONS_TABLE,
            params={"id": f"eq.{conversation_id}"},
            payload=payload,
            prefer="return=representation",
        )
        row = _first(rows)
        if row is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return row


__all__ = ["RealtimeChannel", "SupabaseChatBackend"]
