"""Outbound side of the transport: the bridge process that owns the WhatsApp socket."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

import httpx

from wabridge.config import settings
from wabridge.errors import TransportSendFailure
from wabridge.logging_config import get_logger
from wabridge.schemas.transport import ChatSnapshot

logger = get_logger("transport_client")


@dataclass
class SendReceipt:
    provider_message_id: Optional[str]
    remote_address: Optional[str]


class TransportClient(ABC):
    """Per-session connection handle."""

    session_id: UUID

    @abstractmethod
    async def start(self) -> None:
        """Ask the transport to (re)open the connection and start delivering events."""

    @abstractmethod
    async def send_text(self, address: str, text: str) -> SendReceipt:
        """Send a text message. Raises TransportSendFailure."""

    @abstractmethod
    async def request_history(self, chat_limit: int, message_limit: int) -> bool:
        """Ask for recent messages of recent chats; they come back as messaging-history.set."""

    @abstractmethod
    async def fetch_groups(self) -> list[ChatSnapshot]:
        """Groups the linked account participates in."""

    @abstractmethod
    async def logout(self) -> None:
        """Drop the linked device and its credentials."""

    async def close(self) -> None:
        return None


class BridgeTransport(TransportClient):
    """Talks to the connection bridge over HTTP."""

    def __init__(
        self,
        session_id: UUID,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.session_id = session_id
        self.base_url = (base_url or settings.bridge_base_url).rstrip("/")
        headers = {}
        token = token if token is not None else settings.bridge_token
        if token:
            headers["X-Bridge-Token"] = token
        self._client = client or httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=timeout_seconds)

    def _path(self, action: str) -> str:
        return f"/sessions/{self.session_id}/{action}"

    async def start(self) -> None:
        response = await self._client.post(self._path("start"))
        logger.info(f"Bridge start: session={self.session_id}, status={response.status_code}")
        response.raise_for_status()

    async def send_text(self, address: str, text: str) -> SendReceipt:
        try:
            response = await self._client.post(self._path("send"), json={"jid": address, "text": text})
        except httpx.HTTPError as e:
            logger.error(f"Bridge send error: session={self.session_id}, jid={address}, error={e}")
            raise TransportSendFailure(address, str(e)) from e

        logger.info(
            f"Bridge send response: status={response.status_code}, jid={address}, body={response.text[:200]}"
        )
        if response.status_code != 200:
            raise TransportSendFailure(address, f"bridge returned {response.status_code}")

        try:
            key = (response.json() or {}).get("key") or {}
        except ValueError:
            key = {}
        return SendReceipt(provider_message_id=key.get("id"), remote_address=key.get("remoteJid"))

    async def request_history(self, chat_limit: int, message_limit: int) -> bool:
        try:
            response = await self._client.post(
                self._path("history"), json={"chatLimit": chat_limit, "messageLimit": message_limit}
            )
        except httpx.HTTPError as e:
            logger.warning(f"Bridge history request failed for session {self.session_id}: {e}")
            return False
        logger.info(f"Bridge history request: session={self.session_id}, status={response.status_code}")
        return response.status_code in (200, 202)

    async def fetch_groups(self) -> list[ChatSnapshot]:
        try:
            response = await self._client.get(self._path("groups"))
            response.raise_for_status()
            data = response.json() or {}
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Could not fetch groups for session {self.session_id}: {e}")
            return []
        # Keyed by group address, as the WhatsApp library returns it.
        groups = data.values() if isinstance(data, dict) else data
        return [ChatSnapshot.model_validate(group) for group in groups if isinstance(group, dict)]

    async def logout(self) -> None:
        try:
            response = await self._client.post(self._path("logout"))
            logger.info(f"Bridge logout: session={self.session_id}, status={response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Bridge logout failed for session {self.session_id}: {e}")

    async def close(self) -> None:
        await self._client.aclose()
