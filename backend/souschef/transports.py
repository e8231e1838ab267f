"""
Chat Transports
Two interchangeable ways of talking to users: a browser web socket and a Slack bot.
Both hand inbound text to the same callback and send replies back to the sender.
"""

import asyncio
import hashlib
import hmac
import json
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
from fastapi import WebSocket, WebSocketDisconnect

from config import SLACK_API_URL, HTTP_TIMEOUT
from souschef.errors import TransportError
from souschef.logger import get_logger

logger = get_logger(__name__)


@dataclass
class InboundMessage:
    """A text message received from a user"""
    user_id: str
    text: str
    reply_to: Any   # the web socket, or the Slack channel id


MessageHandler = Callable[[InboundMessage, "ChatTransport"], Awaitable[None]]


class ChatTransport(ABC):
    """Delivers user messages to a handler and sends text back to the sender"""

    name: str = ""

    def __init__(self, on_message: MessageHandler):
        self.on_message = on_message

    @abstractmethod
    async def send_text(self, message: InboundMessage, text: str) -> None:
        ...


# ============================================================================
# WEB SOCKET
# ============================================================================

class WebSocketTransport(ChatTransport):
    """JSON frames over a web socket: {"type": "msg", "text": ...} and {"type": "ping"}"""

    name = "websocket"

    async def serve(self, websocket: WebSocket) -> None:
        """Read frames until the client goes away; each connection is one user"""
        await websocket.accept()
        client_id = str(uuid.uuid4())
        logger.info(f"Web socket client {client_id} connected")
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = json.loads(raw)
                except ValueError:
                    logger.warning(f"Ignoring non-JSON frame from {client_id}")
                    continue
                if not isinstance(frame, dict):
                    continue
                if frame.get("type") == "msg":
                    message = InboundMessage(user_id=client_id, text=str(frame.get("text", "")), reply_to=websocket)
                    await self.on_message(message, self)
                elif frame.get("type") == "ping":
                    await websocket.send_json({"type": "ping"})
        except WebSocketDisconnect:
            logger.info(f"Web socket client {client_id} disconnected")

    async def send_text(self, message: InboundMessage, text: str) -> None:
        await message.reply_to.send_json({"type": "msg", "text": text})


# ============================================================================
# SLACK
# ============================================================================

class SlackTransport(ChatTransport):
    """Slack Events API in, chat.postMessage out. Only direct messages are answered."""

    name = "slack"

    def __init__(
        self,
        on_message: MessageHandler,
        bot_token: str,
        signing_secret: str = "",
        api_url: str = SLACK_API_URL,
        timeout: float = HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(on_message)
        if not bot_token:
            raise ValueError("SLACK_BOT_TOKEN is required for the Slack transport")
        self.bot_token = bot_token
        self.signing_secret = signing_secret
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._tasks: set[asyncio.Task] = set()

    def verify_signature(self, timestamp: str, body: bytes, signature: str, now: Optional[float] = None) -> bool:
        """Check the X-Slack-Signature header; always true when no signing secret is set"""
        if not self.signing_secret:
            return True
        try:
            age = abs((now or time.time()) - int(timestamp))
        except (TypeError, ValueError):
            return False
        if age > 60 * 5:
            return False
        basestring = f"v0:{timestamp}:".encode() + body
        expected = "v0=" + hmac.new(self.signing_secret.encode(), basestring, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature or "")

    def handle_event(self, payload: dict) -> Optional[dict]:
        """Process one Events API payload; returns the body to answer with, if any"""
        if payload.get("type") == "url_verification":
            return {"challenge": payload.get("challenge", "")}
        if payload.get("type") != "event_callback":
            return None

        event = payload.get("event") or {}
        if not self._is_direct_message(event):
            return None

        message = InboundMessage(user_id=event["user"], text=event.get("text", ""), reply_to=event["channel"])
        # Slack wants an answer within 3 seconds, so the turn runs in the background
        task = asyncio.create_task(self.on_message(message, self))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return None

    @staticmethod
    def _is_direct_message(event: dict) -> bool:
        # ignore messages from bots (including the replies we sent) and edits/joins
        return (
            event.get("type") == "message"
            and str(event.get("channel", "")).startswith("D")
            and not event.get("bot_id")
            and not event.get("subtype")
            and bool(event.get("user"))
        )

    async def drain(self) -> None:
        """Wait for every turn still running in the background"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def send_text(self, message: InboundMessage, text: str) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.api_url}/chat.postMessage",
                    headers={"Authorization": f"Bearer {self.bot_token}"},
                    json={"channel": message.reply_to, "text": text},
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransportError(f"Slack postMessage failed: {e}") from e
        if not data.get("ok"):
            raise TransportError(f"Slack postMessage rejected: {data.get('error', 'unknown error')}")
