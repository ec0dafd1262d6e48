"""Duplex push subscription to the gateway's event socket.

The gateway publishes events over Socket.IO; only the few engine.io frames
needed to stay connected and receive events are understood here. Dropped
connections are retried with exponential backoff up to a bounded number of
attempts; after that the socket stays down until ``trigger`` is called.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode, urlparse, urlunparse

import websockets

from zapflow.infra.config import config
from zapflow.infra.error_handler import RetryableError, compute_backoff_delay
from zapflow.infra.metrics import socket_connected, socket_reconnects_total

logger = logging.getLogger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]

# engine.io / socket.io frame prefixes
EIO_OPEN = "0"
EIO_PING = "2"
EIO_PONG = "3"
SIO_CONNECT = "40"
SIO_EVENT = "42"


class ReconnectPolicy:
    """Base delay doubling per attempt, capped, for at most ``max_attempts`` attempts."""

    def __init__(self, base_delay: float = 1.0, max_delay: float = 30.0, max_attempts: int = 10):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.attempts = 0

    @classmethod
    def from_config(cls) -> "ReconnectPolicy":
        return cls(
            base_delay=config.WS_BACKOFF_BASE_SECONDS,
            max_delay=config.WS_BACKOFF_MAX_SECONDS,
            max_attempts=config.WS_MAX_ATTEMPTS,
        )

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def next_delay(self) -> Optional[float]:
        """Delay before the next attempt, or None once attempts are used up."""
        if self.exhausted:
            return None
        delay = compute_backoff_delay(self.attempts, initial_delay=self.base_delay, max_delay=self.max_delay)
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0


def build_socket_url(ws_url: str, api_key: Optional[str] = None) -> str:
    """Point a gateway ws url at the engine.io websocket transport."""
    parsed = urlparse(ws_url)
    path = parsed.path if parsed.path.startswith("/socket.io") else "/socket.io/"
    query = {"EIO": "4", "transport": "websocket"}
    if api_key:
        query["apikey"] = api_key
    return urlunparse((parsed.scheme, parsed.netloc, path, "", urlencode(query), ""))


def decode_frame(frame: Any) -> Optional[Dict[str, Any]]:
    """
    Turn one socket frame into an event envelope.

    Socket.IO event frames (``42["messages.upsert", {...}]``) and plain JSON
    objects are accepted; control frames and anything else return None.
    """
    if isinstance(frame, bytes):
        frame = frame.decode("utf-8", errors="replace")
    if not isinstance(frame, str):
        return None

    try:
        if frame.startswith(SIO_EVENT):
            body = json.loads(frame[len(SIO_EVENT):])
            if isinstance(body, list) and body and isinstance(body[0], str):
                data = body[1] if len(body) > 1 else None
                if isinstance(data, dict) and "event" in data:
                    return data
                return {"event": body[0], "data": data}
            return None
        if frame.startswith("{"):
            body = json.loads(frame)
            return body if isinstance(body, dict) else None
    except json.JSONDecodeError:
        logger.warning("Undecodable socket frame", extra={"frame_prefix": frame[:20]})
    return None


class EvolutionSocket:
    """Long-lived push subscription with bounded reconnects."""

    def __init__(
        self,
        url: str,
        on_event: EventHandler,
        policy: Optional[ReconnectPolicy] = None,
        connect: Callable[..., Any] = websockets.connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            url: Full websocket url (see ``build_socket_url``)
            on_event: Coroutine called with each decoded event envelope
            policy: Reconnect policy
            connect: websocket connect factory
            sleep: Awaitable sleep, replaced in tests
        """
        self.url = url
        self.on_event = on_event
        self.policy = policy or ReconnectPolicy.from_config()
        self._connect = connect
        self._sleep = sleep
        self._ws = None
        self._closing = False
        self.running = False
        self.gave_up = False

    async def _handle_frame(self, ws, frame: Any) -> None:
        if frame == EIO_PING:
            await ws.send(EIO_PONG)
            return
        if isinstance(frame, str) and frame.startswith(EIO_OPEN):
            await ws.send(SIO_CONNECT)
            return

        event = decode_frame(frame)
        if event is None:
            return
        try:
            await self.on_event(event)
        except RetryableError as e:
            logger.warning("Push event handling failed", extra={"category": e.category.value, "error": e.message})
        except Exception:
            logger.exception("Push event handler crashed, event dropped", extra={"event": event.get("event")})

    async def _session(self) -> None:
        async with self._connect(self.url, ping_interval=None) as ws:
            self._ws = ws
            socket_connected.set(1)
            logger.info("Push socket connected")
            async for frame in ws:
                # A connection that delivers frames counts as recovered
                self.policy.reset()
                await self._handle_frame(ws, frame)

    async def run(self) -> None:
        """Connect and consume events until closed or reconnect attempts run out."""
        self._closing = False
        self.running = True
        self.gave_up = False
        try:
            while not self._closing:
                try:
                    await self._session()
                    logger.info("Push socket closed by server")
                except (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError) as e:
                    logger.warning("Push socket connection failed", extra={"error": str(e)})
                finally:
                    self._ws = None
                    socket_connected.set(0)

                if self._closing:
                    break

                delay = self.policy.next_delay()
                if delay is None:
                    self.gave_up = True
                    logger.error(
                        "Push socket reconnect attempts exhausted",
                        extra={"attempts": self.policy.attempts},
                    )
                    break

                socket_reconnects_total.inc()
                logger.info("Reconnecting push socket", extra={"attempt": self.policy.attempts, "delay": delay})
                await self._sleep(delay)
        finally:
            self.running = False

    async def close(self) -> None:
        """Intentional close: stop reconnecting and reset the attempt counter."""
        self._closing = True
        self.policy.reset()
        ws = self._ws
        if ws is not None:
            await ws.close()

    def trigger(self) -> bool:
        """
        Re-arm after reconnects were exhausted.

        Returns:
            True when the caller should start ``run`` again
        """
        if self.running:
            return False
        self.policy.reset()
        self.gave_up = False
        return True
