from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Protocol
from litestar.types.protocols import Logger
import asyncio
import httpx


@dataclass
class DeliveryResult:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class Notifier(Protocol):
    async def send(self, address: str, text: str) -> DeliveryResult: ...


def create_gateway_client(
    url: str, timeout: float, api_key: Optional[str] = None
) -> httpx.AsyncClient:
    headers = {"X-Api-Key": api_key} if api_key else None
    return httpx.AsyncClient(
        base_url=url,
        headers=headers,
        timeout=timeout,
    )


def format_phone(phone_number: str) -> str:
    return phone_number[1:] if phone_number.startswith("+") else phone_number


def json_body(response: httpx.Response) -> Optional[dict]:
    if not response.content:
        return None
    try:
        data: Any = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class GatewayNotifier(ABC):
    """
    Base for HTTP messaging gateways.

    send() never raises for delivery problems: HTTP errors, transport errors
    and timeouts all come back as a failed DeliveryResult so callers can record
    the failure and carry on with their state transition.
    """

    gateway_name = "gateway"

    def __init__(self, client: httpx.AsyncClient, timeout: float, logger: Logger) -> None:
        self.client = client
        self.timeout = timeout
        self.logger = logger

    @abstractmethod
    async def _post(self, address: str, text: str) -> httpx.Response: ...

    def _provider_message_id(self, response: httpx.Response) -> Optional[str]:
        return None

    async def send(self, address: str, text: str) -> DeliveryResult:
        try:
            response = await asyncio.wait_for(self._post(address, text), self.timeout)
            response.raise_for_status()
        except (asyncio.TimeoutError, httpx.TimeoutException):
            self.logger.error(
                f"Timed out after {self.timeout}s sending message to {address} via {self.gateway_name}"
            )
            return DeliveryResult(success=False, error="timeout")
        except httpx.HTTPError as e:
            self.logger.error(
                f"Failed to send message to {address} via {self.gateway_name}: {e}"
            )
            return DeliveryResult(success=False, error=str(e) or e.__class__.__name__)

        provider_message_id = self._provider_message_id(response)
        self.logger.info(
            f"Message submitted to {self.gateway_name} for {address} (id: {provider_message_id})"
        )
        return DeliveryResult(success=True, provider_message_id=provider_message_id)


class SmsProxyNotifier(GatewayNotifier):
    gateway_name = "sms-proxy"

    async def _post(self, address: str, text: str) -> httpx.Response:
        body = {
            "message": text,
            "phone_numbers": [address],
        }
        return await self.client.post("/send", json=body)

    def _provider_message_id(self, response: httpx.Response) -> Optional[str]:
        data = json_body(response)
        return data.get("id") if data else None


class WahaNotifier(GatewayNotifier):
    """WhatsApp delivery through a WAHA HTTP API session."""

    gateway_name = "waha"

    def __init__(
        self, client: httpx.AsyncClient, timeout: float, logger: Logger, session: str
    ) -> None:
        super().__init__(client, timeout, logger)
        self.session = session

    async def _post(self, address: str, text: str) -> httpx.Response:
        body = {
            "session": self.session,
            "chatId": f"{format_phone(address)}@c.us",
            "text": text,
        }
        return await self.client.post("/api/sendText", json=body)

    def _provider_message_id(self, response: httpx.Response) -> Optional[str]:
        data = json_body(response)
        if data is None:
            return None
        key = data.get("key")
        if isinstance(key, dict) and key.get("id"):
            return key["id"]
        return data.get("id")


def create_notifier(client: httpx.AsyncClient, notifier_settings: Any, logger: Logger) -> GatewayNotifier:
    timeout = float(notifier_settings.timeout_seconds)
    if notifier_settings.kind == "waha":
        return WahaNotifier(client, timeout, logger, session=notifier_settings.waha_session)
    if notifier_settings.kind == "sms_proxy":
        return SmsProxyNotifier(client, timeout, logger)
    raise ValueError(f"Unknown notifier kind: {notifier_settings.kind}")
