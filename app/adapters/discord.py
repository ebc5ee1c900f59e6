"""Discord Gateway WebSocket client.

Implements just enough of Gateway v10 to keep a bot session online:
  - HELLO → heartbeat loop + IDENTIFY
  - READY dispatch → ``connected`` event
  - heartbeat ACK tracking (a zombied socket is closed)
  - close codes mapped to readable errors

There is no RESUME and no automatic reconnect: each session reports exactly
one terminal outcome (``error`` or ``disconnected``) and then stops.
"""

from __future__ import annotations

import asyncio
import json
import logging
import platform
import random
from contextlib import suppress
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from app.adapters.base import GatewayConnection, LifecycleEvent
from app.config import settings

logger = logging.getLogger(__name__)

# ── Gateway opcodes ──────────────────────────────────────────────────
OP_DISPATCH = 0
OP_HEARTBEAT = 1
OP_IDENTIFY = 2
OP_RECONNECT = 7
OP_INVALID_SESSION = 9
OP_HELLO = 10
OP_HEARTBEAT_ACK = 11

# Close codes after which retrying with the same token cannot succeed.
# Texts carry the HTTP-ish markers the error classifier looks for.
FATAL_CLOSE_CODES: dict[int, str] = {
    4004: "401 Unauthorized: authentication failed",
    4008: "429 Too Many Requests: gateway rate limit exceeded",
    4010: "Invalid shard sent to gateway",
    4011: "Sharding required by gateway",
    4012: "Invalid gateway API version",
    4013: "Invalid gateway intents",
    4014: "403 Forbidden: disallowed gateway intents",
}

_DISCONNECT_TIMEOUT = 5.0


class GatewayError(Exception):
    """A gateway session ended abnormally."""

    def __init__(self, message: str, *, close_code: int | None = None) -> None:
        super().__init__(message)
        self.close_code = close_code


def _normalize_token(token: str) -> str:
    token = (token or "").strip()
    if token.startswith("Bot "):
        token = token[4:]
    if not token:
        raise ValueError("Token is required")
    if any(ch.isspace() for ch in token):
        raise ValueError("Token must not contain whitespace")
    return token


class DiscordGatewayClient(GatewayConnection):
    """One bot session on the Discord Gateway."""

    def __init__(
        self,
        token: str,
        *,
        gateway_url: str | None = None,
        intents: int | None = None,
        connect_timeout: float | None = None,
    ) -> None:
        super().__init__()
        self._token = _normalize_token(token)
        self._gateway_url = gateway_url or settings.discord_gateway_url
        self._intents = settings.discord_intents if intents is None else intents
        self._connect_timeout = connect_timeout or settings.discord_connect_timeout

        self._ws: ClientConnection | None = None
        self._task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._sequence: int | None = None
        self._session_id: str | None = None
        self._ack_received = True
        self._ready = False
        self._closing = False
        self._close_error: str | None = None

    @property
    def is_connected(self) -> bool:
        return self._ready

    # ── Connection lifecycle ─────────────────────────────────────────

    def connect(self) -> asyncio.Task:
        if self._task and not self._task.done():
            return self._task
        self._closing = False
        self._close_error = None
        self._ready = False
        self._sequence = None
        self._task = asyncio.create_task(self._run(), name="discord-gateway-session")
        return self._task

    async def disconnect(self) -> None:
        self._closing = True
        task = self._task
        if task is None or task.done():
            return

        if self._ws is None:
            # Still in the opening handshake
            task.cancel()
        else:
            await self._ws.close(code=1000)
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=_DISCONNECT_TIMEOUT)
                return
            except TimeoutError:
                logger.warning("Gateway session did not close in time; cancelling")
                task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        close_code: int | None = None
        close_reason = ""
        try:
            async with websockets.connect(
                self._gateway_url, open_timeout=self._connect_timeout, max_size=None
            ) as ws:
                self._ws = ws
                try:
                    async for raw in ws:
                        await self._handle_payload(json.loads(raw))
                except ConnectionClosed:
                    pass
                close_code, close_reason = ws.close_code, ws.close_reason or ""
        except asyncio.CancelledError:
            self._emit(LifecycleEvent.DISCONNECTED, None)
            raise
        except Exception as exc:
            logger.warning("Discord gateway session failed: %s", exc)
            self._emit(LifecycleEvent.ERROR, exc)
            return
        finally:
            await self._stop_heartbeat()
            self._ws = None
            self._ready = False

        self._report_close(close_code, close_reason)

    def _report_close(self, close_code: int | None, close_reason: str) -> None:
        if self._closing:
            logger.info("Discord gateway session closed by operator")
            self._emit(LifecycleEvent.DISCONNECTED, None)
        elif self._close_error is not None:
            self._emit(LifecycleEvent.DISCONNECTED, GatewayError(self._close_error, close_code=close_code))
        elif close_code in FATAL_CLOSE_CODES:
            # No code in the text: "4010" would read as a 401 to the classifier
            message = FATAL_CLOSE_CODES[close_code]
            logger.warning("Discord gateway closed with fatal code %s", close_code)
            self._emit(LifecycleEvent.ERROR, GatewayError(message, close_code=close_code))
        else:
            message = f"Discord gateway websocket closed (code {close_code})"
            if close_reason:
                message += f": {close_reason}"
            logger.info(message)
            self._emit(LifecycleEvent.DISCONNECTED, GatewayError(message, close_code=close_code))

    # ── Protocol ─────────────────────────────────────────────────────

    async def _handle_payload(self, payload: dict[str, Any]) -> None:
        opcode = payload.get("op")

        if opcode == OP_HELLO:
            interval_ms = (payload.get("d") or {}).get("heartbeat_interval", 41250)
            self._start_heartbeat(interval_ms / 1000.0)
            await self._identify()

        elif opcode == OP_HEARTBEAT_ACK:
            self._ack_received = True

        elif opcode == OP_HEARTBEAT:
            await self._send(OP_HEARTBEAT, self._sequence)

        elif opcode == OP_RECONNECT:
            await self._close_with_error("Discord gateway requested a reconnect")

        elif opcode == OP_INVALID_SESSION:
            await self._close_with_error("Discord gateway invalidated the session")

        elif opcode == OP_DISPATCH:
            if payload.get("s") is not None:
                self._sequence = payload["s"]
            if payload.get("t") == "READY":
                data = payload.get("d") or {}
                self._session_id = data.get("session_id")
                self._ready = True
                user = data.get("user") or {}
                logger.info("Discord gateway READY as %s", user.get("username", "unknown"))
                self._emit(LifecycleEvent.CONNECTED)

    async def _identify(self) -> None:
        await self._send(
            OP_IDENTIFY,
            {
                "token": self._token,
                "intents": self._intents,
                "properties": {
                    "os": platform.system().lower() or "linux",
                    "browser": "stay-online",
                    "device": "stay-online",
                },
                "presence": {"status": "online", "since": None, "activities": [], "afk": False},
            },
        )

    async def _send(self, opcode: int, data: Any) -> None:
        if self._ws is None:
            return
        await self._ws.send(json.dumps({"op": opcode, "d": data}))

    async def _close_with_error(self, message: str) -> None:
        self._close_error = message
        if self._ws is not None:
            await self._ws.close(code=4000)

    # ── Heartbeat ────────────────────────────────────────────────────

    def _start_heartbeat(self, interval: float) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
        self._ack_received = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(interval))

    async def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _heartbeat_loop(self, interval: float) -> None:
        # Jitter the first beat as the gateway docs ask
        await asyncio.sleep(interval * random.random())
        try:
            while self._ws is not None:
                if not self._ack_received:
                    await self._close_with_error("Discord gateway stopped acknowledging heartbeats")
                    return
                self._ack_received = False
                await self._send(OP_HEARTBEAT, self._sequence)
                await asyncio.sleep(interval)
        except ConnectionClosed:
            return
