"""Evolution API HTTP client: outbound sends and inbound fetches."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import httpx

from zapflow.adapters.evolution_parser import extract_message_records, parse_chats, parse_messages
from zapflow.infra.config import config
from zapflow.infra.error_handler import APIError, RetryableError, ValidationError, wrap_http_error
from zapflow.infra.metrics import outbound_messages_total
from zapflow.models.directory import Department
from zapflow.models.raw import RawChat, RawMessage
from zapflow.services.department_selection import compose_department_menu
from zapflow.services.identity import IdentityKind, digits_only, parse_identifier

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0

# Typing indicator shown before delivery, as the gateway's send options expect
SEND_OPTIONS = {"delay": 1200, "presence": "composing", "linkPreview": False}


@dataclass
class SendResult:
    success: bool
    remote_id: Optional[str] = None


def send_number(phone_key: str) -> str:
    """Phone keys go out as bare digits; unresolved jids are passed through."""
    if "@" not in phone_key:
        return digits_only(phone_key)
    identity = parse_identifier(phone_key)
    if identity.kind == IdentityKind.PHONE and identity.key:
        return identity.key
    return phone_key


def pick_instance(instances: Sequence[Dict[str, Any]]) -> Optional[str]:
    """
    Choose an instance name from a ``fetchInstances`` listing.

    Prefers a connected instance, then a connecting one, then the first.
    """
    names = []
    for item in instances:
        if not isinstance(item, dict):
            continue
        info = item.get("instance") if isinstance(item.get("instance"), dict) else item
        name = info.get("instanceName") or info.get("name")
        status = info.get("status") or info.get("connectionStatus")
        if name:
            names.append((name, status))

    for wanted in ("open", "connecting"):
        for name, status in names:
            if status == wanted:
                return name
    return names[0][0] if names else None


class EvolutionClient:
    """Transport for one Evolution API instance."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        instance_name: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: Gateway base URL
            api_key: Value for the ``apikey`` header
            instance_name: Configured instance, replaced by auto-discovery when missing
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        """
        if not base_url or not api_key:
            raise ValidationError("Evolution API base URL and API key are required")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.instance_name = instance_name
        self.timeout = timeout
        self._transport = transport
        self._resolved_instance: Optional[str] = None

    @classmethod
    def from_config(cls) -> "EvolutionClient":
        return cls(
            base_url=config.EVOLUTION_BASE_URL or "",
            api_key=config.EVOLUTION_API_KEY or "",
            instance_name=config.EVOLUTION_INSTANCE_NAME,
        )

    async def _request(self, method: str, path: str, operation: str, json: Optional[Dict[str, Any]] = None) -> Any:
        headers = {"apikey": self.api_key, "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, headers=headers, json=json)
                response.raise_for_status()
                if not response.content:
                    return None
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise wrap_http_error(e, operation) from e

    # --- instance ---

    async def fetch_instances(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/instance/fetchInstances", "fetch_instances")
        if isinstance(data, list):
            return data
        if isinstance(data, dict) and isinstance(data.get("instances"), list):
            return data["instances"]
        return []

    async def connection_state(self, instance_name: Optional[str] = None) -> Optional[str]:
        """``open``/``connecting``/``close`` as reported for the instance."""
        name = instance_name or self.instance_name
        data = await self._request("GET", f"/instance/connectionState/{name}", "connection_state")
        if not isinstance(data, dict):
            return None
        info = data.get("instance") if isinstance(data.get("instance"), dict) else data
        return info.get("state") or info.get("status")

    async def resolve_instance(self) -> str:
        """
        Instance name to use for calls.

        The configured name is used while the gateway knows it; otherwise the
        connected (then connecting, then first) instance is discovered once
        and cached.
        """
        if self._resolved_instance:
            return self._resolved_instance

        try:
            await self.connection_state(self.instance_name)
            self._resolved_instance = self.instance_name
            return self._resolved_instance
        except APIError as e:
            if e.status_code != 404:
                raise

        discovered = pick_instance(await self.fetch_instances())
        if discovered is None:
            raise APIError(f"No gateway instance available (configured: {self.instance_name})", status_code=404)
        logger.warning(
            "Configured instance not found, using discovered instance",
            extra={"configured": self.instance_name, "instance": discovered},
        )
        self._resolved_instance = discovered
        return discovered

    # --- outbound ---

    async def send_text(self, phone_key: str, text: str, kind: str = "agent") -> SendResult:
        """
        Send a text message and report the gateway id it was given.

        Transport and API failures are logged and reported as ``success=False``.
        """
        try:
            instance = await self.resolve_instance()
            data = await self._request(
                "POST",
                f"/message/sendText/{instance}",
                "send_message",
                json={
                    "number": send_number(phone_key),
                    "options": SEND_OPTIONS,
                    "textMessage": {"text": text},
                    "text": text,
                },
            )
        except RetryableError as e:
            outbound_messages_total.labels(kind=kind, status="error").inc()
            logger.warning(
                "Gateway send failed",
                extra={"kind": kind, "category": e.category.value, "error": e.message},
            )
            return SendResult(success=False)

        outbound_messages_total.labels(kind=kind, status="sent").inc()
        remote_id = None
        if isinstance(data, dict) and isinstance(data.get("key"), dict):
            remote_id = data["key"].get("id")
        return SendResult(success=True, remote_id=remote_id)

    async def send_message(self, phone_key: str, text: str, kind: str = "agent") -> bool:
        return (await self.send_text(phone_key, text, kind)).success

    async def send_department_menu(self, phone_key: str, departments: Sequence[Department], now: datetime) -> bool:
        if not departments:
            return False
        return await self.send_message(phone_key, compose_department_menu(departments, now), kind="department_menu")

    # --- inbound ---

    async def fetch_chats(self) -> List[RawChat]:
        """
        All chats known to the instance.

        Raises:
            RetryableError: When the gateway is unavailable or rejects the call
        """
        instance = await self.resolve_instance()
        data = await self._request("POST", f"/chat/findChats/{instance}", "fetch_chats", json={})
        return parse_chats(data)

    async def fetch_messages(self, chat_id: str, limit: int = 50) -> List[RawMessage]:
        """
        Most recent messages of one chat.

        Raises:
            RetryableError: When the gateway is unavailable or rejects the call
        """
        instance = await self.resolve_instance()
        data = await self._request(
            "POST",
            f"/chat/findMessages/{instance}",
            "fetch_messages",
            json={"where": {"key": {"remoteJid": chat_id}}, "limit": limit},
        )
        return parse_messages(extract_message_records(data))
