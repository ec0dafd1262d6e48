"""Sync service: poll loop, push handling and outbound delivery.

All three trigger sources (the fixed-interval poll, push events and local
agent actions) run on one asyncio loop and write to one
``LiveUpdateDispatcher``. Failed fetches are retried on the next poll; failed
sends roll back the bookkeeping that produced them.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from sqlalchemy.exc import SQLAlchemyError

from zapflow.adapters.evolution_client import SendResult
from zapflow.adapters.evolution_parser import split_event
from zapflow.adapters.evolution_socket import EvolutionSocket
from zapflow.infra.config import config
from zapflow.infra.error_handler import RetryableError
from zapflow.infra.metrics import poll_cycle_duration, poll_cycles_total
from zapflow.models.chat import Chat
from zapflow.models.directory import Department
from zapflow.models.raw import RawChat, RawMessage
from zapflow.services.live_update import ActionKind, LiveUpdateDispatcher, OutboundAction
from zapflow.services.storage_service import EntityType, StorageService

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def send_text(self, phone_key: str, text: str, kind: str = "agent") -> SendResult: ...

    async def send_message(self, phone_key: str, text: str, kind: str = "agent") -> bool: ...

    async def send_department_menu(self, phone_key: str, departments: Sequence[Department], now: datetime) -> bool: ...

    async def fetch_chats(self) -> List[RawChat]: ...

    async def fetch_messages(self, chat_id: str, limit: int = 50) -> List[RawMessage]: ...


class FetchThrottle:
    """Allow at most one per-chat message fetch per ``interval`` seconds."""

    def __init__(self, interval: float = 5.0, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self.clock = clock
        self._last: Dict[str, float] = {}

    def allow(self, chat_id: str) -> bool:
        now = self.clock()
        last = self._last.get(chat_id)
        if last is not None and now - last < self.interval:
            return False
        self._last[chat_id] = now
        return True


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncService:
    """Keeps the dispatcher in step with the gateway and the store."""

    def __init__(
        self,
        dispatcher: LiveUpdateDispatcher,
        transport: Optional[Transport],
        storage: StorageService,
        socket: Optional[EvolutionSocket] = None,
        poll_interval: Optional[float] = None,
        throttle: Optional[FetchThrottle] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.dispatcher = dispatcher
        self.transport = transport
        self.storage = storage
        self.socket = socket
        self.poll_interval = poll_interval if poll_interval is not None else config.POLL_INTERVAL_SECONDS
        self.throttle = throttle or FetchThrottle(config.MESSAGE_FETCH_THROTTLE_SECONDS)
        self.clock = clock
        self.last_poll_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._socket_task: Optional[asyncio.Task] = None

    # --- lifecycle ---

    def load_state(self) -> None:
        """Seed the dispatcher from storage."""
        self.dispatcher.load(self.storage.load_chats())
        self.dispatcher.set_contacts(self.storage.load_contacts())
        self.dispatcher.set_chatbot_config(self.storage.load_chatbot_config())
        self.dispatcher.drain_changes()

    async def start(self) -> None:
        self.load_state()
        self._poll_task = asyncio.create_task(self._poll_loop(), name="zapflow-poll")
        self._start_socket()
        logger.info("Sync service started", extra={"poll_interval": self.poll_interval})

    async def stop(self) -> None:
        if self.socket is not None:
            await self.socket.close()
        for task in (self._poll_task, self._socket_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._poll_task = None
        self._socket_task = None
        logger.info("Sync service stopped")

    def _start_socket(self) -> None:
        if self.socket is None:
            return
        self._socket_task = asyncio.create_task(self.socket.run(), name="zapflow-socket")

    async def trigger(self) -> Dict[str, Any]:
        """Manual sync: poll now and re-arm the push socket if it gave up."""
        socket_restarted = False
        if self.socket is not None and self.socket.trigger():
            self._start_socket()
            socket_restarted = True
        ok = await self.poll_once()
        return {"polled": ok, "socket_restarted": socket_restarted}

    def status(self) -> Dict[str, Any]:
        return {
            "polling": self._poll_task is not None and not self._poll_task.done(),
            "socket_running": bool(self.socket and self.socket.running),
            "socket_gave_up": bool(self.socket and self.socket.gave_up),
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
            "last_error": self.last_error,
            "chats": len(self.dispatcher.chats),
        }

    # --- triggers ---

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                self.last_error = str(e)
                poll_cycles_total.labels(status="error").inc()
                logger.exception("Poll cycle crashed, retrying next interval")
            await asyncio.sleep(self.poll_interval)

    async def poll_once(self) -> bool:
        """
        One reconciliation cycle over all chats.

        Returns:
            False when the gateway or the store failed; the next cycle retries
        """
        if self.transport is None:
            logger.warning("Poll skipped, no gateway configured")
            return False
        started = time.perf_counter()
        try:
            departments = self.storage.load_departments()
            raw_chats = await self.transport.fetch_chats()
            now = self.clock()
            actions = self.dispatcher.apply_fetch(raw_chats, departments, now)
            self.persist()
            await self.perform(actions, now)
        except RetryableError as e:
            self.last_error = e.message
            poll_cycles_total.labels(status="error").inc()
            logger.warning("Poll cycle failed", extra={"category": e.category.value, "error": e.message})
            return False
        except SQLAlchemyError as e:
            self.last_error = str(e)
            poll_cycles_total.labels(status="error").inc()
            logger.error("Poll cycle failed to reach the store", extra={"error": str(e)})
            return False
        finally:
            poll_cycle_duration.observe(time.perf_counter() - started)

        self.last_poll_at = now
        self.last_error = None
        poll_cycles_total.labels(status="ok").inc()
        return True

    async def refresh_chat(self, chat_id: str, limit: Optional[int] = None) -> bool:
        """
        Re-fetch one chat's messages, at most once per throttle interval.

        Returns:
            False when throttled or the fetch failed
        """
        chat = self.dispatcher.get(chat_id)
        if self.transport is None:
            return False
        if not self.throttle.allow(chat.id):
            logger.debug("Message fetch throttled", extra={"chat_id": chat.id})
            return False
        try:
            raw_messages = await self.transport.fetch_messages(
                chat.remote_jid or chat.id,
                limit or config.MESSAGE_FETCH_LIMIT,
            )
        except RetryableError as e:
            logger.warning("Message fetch failed", extra={"chat_id": chat.id, "error": e.message})
            return False

        now = self.clock()
        actions = self.dispatcher.apply_messages(chat.id, raw_messages, self.storage.load_departments(), now)
        self.persist()
        await self.perform(actions, now)
        return True

    async def handle_event(self, payload: Dict[str, Any]) -> int:
        """
        Apply a push event (webhook or socket) through the fetch path.

        Returns:
            Number of messages applied
        """
        messages, updates = split_event(payload)
        if not messages and not updates:
            return 0

        now = self.clock()
        departments = self.storage.load_departments() if messages else []
        actions: List[OutboundAction] = []
        for message in messages:
            actions.extend(self.dispatcher.apply_push(message, departments, now))
        if updates:
            self.dispatcher.apply_status_updates(updates)
        self.persist()
        await self.perform(actions, now)
        return len(messages)

    # --- local actions ---

    async def send_agent_message(self, chat_id: str, text: str) -> Chat:
        action = self.dispatcher.send_local(chat_id, text, self.clock())
        self.persist()
        await self.perform([action])
        return self.dispatcher.get(action.chat_id)

    async def close_chat(self, chat_id: str, with_survey: bool = True) -> Chat:
        now = self.clock()
        actions = self.dispatcher.close_chat(chat_id, now, with_survey)
        self.persist()
        await self.perform(actions, now)
        return self.dispatcher.get(chat_id)

    # --- outbound ---

    async def perform(self, actions: Sequence[OutboundAction], now: Optional[datetime] = None) -> int:
        """
        Deliver outbound actions in order.

        Returns:
            Number delivered; failures are rolled back on the dispatcher
        """
        delivered = 0
        for action in actions:
            if await self._deliver(action, now or self.clock()):
                delivered += 1
            else:
                logger.warning(
                    "Outbound send failed, rolling back",
                    extra={"chat_id": action.chat_id, "kind": action.kind.value},
                )
                self.dispatcher.rollback(action)
        if actions:
            self.persist()
        return delivered

    async def _deliver(self, action: OutboundAction, now: datetime) -> bool:
        if self.transport is None:
            return False
        if action.kind == ActionKind.DEPARTMENT_MENU:
            return await self.transport.send_department_menu(
                action.phone_key, action.departments, self.dispatcher.local_time(now),
            )
        if action.kind == ActionKind.AGENT:
            result = await self.transport.send_text(action.phone_key, action.text, kind=action.kind.value)
            if result.success and action.local_id:
                self.dispatcher.confirm_local(action.chat_id, action.local_id, result.remote_id, success=True)
            return result.success
        return await self.transport.send_message(action.phone_key, action.text, kind=action.kind.value)

    def persist(self) -> None:
        changed, removed = self.dispatcher.drain_changes()
        if changed:
            self.storage.save_chats(changed)
        for chat_id in removed:
            self.storage.delete(EntityType.CHATS, chat_id)
