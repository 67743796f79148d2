from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from spin_agent.logging_config import get_logger
from spin_agent.services.errors import GatewayError, GatewayHTTPError, GatewayNetworkError

logger = get_logger("whatsapp_service")

WHATSAPP_SUFFIXES = ("@s.whatsapp.net", "@c.us", "@g.us")


def normalize_jid(value: Optional[str]) -> str:
    """Bare phone number from a WhatsApp JID (``5511999999999@s.whatsapp.net`` → ``5511999999999``)."""
    address = (value or "").strip()
    for suffix in WHATSAPP_SUFFIXES:
        if address.endswith(suffix):
            address = address[: -len(suffix)]
            break
    # device suffix, e.g. 5511999999999:12
    address = address.split(":", 1)[0]
    return "".join(ch for ch in address if ch.isdigit()) or address


class WhatsAppGateway(ABC):
    @abstractmethod
    async def send(self, to: str, text: str) -> dict[str, Any]:
        """Send a text message. Raises GatewayError on failure."""
        pass


class EvolutionGateway(WhatsAppGateway):
    """Evolution API ``/message/sendText/{instance}``."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        instance_id: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.instance_id = instance_id
        self.timeout = timeout
        self._transport = transport

    async def send(self, to: str, text: str) -> dict[str, Any]:
        number = f"{normalize_jid(to)}@s.whatsapp.net"
        url = f"{self.base_url}/message/sendText/{self.instance_id}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    headers={"apikey": self.api_key, "Content-Type": "application/json"},
                    json={"number": number, "text": text},
                )
        except httpx.HTTPError as exc:
            logger.error(
                "Gateway request failed",
                extra={"context": {"instance_id": self.instance_id, "error": str(exc)}},
            )
            raise GatewayNetworkError(str(exc)) from exc

        logger.info(
            "Gateway response",
            extra={"context": {"instance_id": self.instance_id, "status": response.status_code}},
        )
        if not response.is_success:
            raise GatewayHTTPError(response.status_code, response.text)

        try:
            return response.json()
        except ValueError:
            return {}


def provider_message_id(payload: dict[str, Any]) -> Optional[str]:
    key = payload.get("key") if isinstance(payload, dict) else None
    if isinstance(key, dict):
        return key.get("id")
    return None


def gateway_for_account(account, settings) -> WhatsAppGateway:
    base_url = account.base_url or settings.evolution_base_url
    api_key = account.api_key or settings.evolution_api_key
    if not base_url or not api_key:
        raise GatewayError(f"Gateway not configured for instance {account.instance_id}")
    return EvolutionGateway(
        base_url=base_url,
        api_key=api_key,
        instance_id=account.instance_id,
        timeout=settings.gateway_timeout_seconds,
    )
