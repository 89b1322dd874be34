"""
This module contains the WhatsApp Cloud API client used for outbound messages.
"""
import logging
import re
from typing import Optional, Protocol

import httpx

from .config import Settings

logger = logging.getLogger(__name__)

_PHONE_NOISE = re.compile(r"[\s+\-()]")


def normalize_phone(phone_number: str) -> str:
    """
    Strips '+', spaces, dashes and parentheses so numbers compare equal
    regardless of how they were typed.
    """
    return _PHONE_NOISE.sub("", phone_number or "")


class WhatsAppError(Exception):
    """Base class for outbound messaging failures."""
    pass


class WhatsAppConfigError(WhatsAppError):
    """Provider credentials are missing."""
    pass


class WhatsAppTransportError(WhatsAppError):
    """The provider could not be reached or did not answer in time."""
    pass


class WhatsAppAPIError(WhatsAppError):
    """The provider rejected the request."""

    def __init__(self, status_code: int, body):
        super().__init__(f"WhatsApp API error {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class Messenger(Protocol):
    async def send_text(self, to: str, body: str) -> dict: ...

    async def get_media_url(self, media_id: str) -> Optional[str]: ...


class WhatsAppClient:
    """
    Sends text messages and resolves media through the WhatsApp Cloud API.

    Args:
        settings (Settings): Source of the credentials and API version.
        http_client (httpx.AsyncClient): Optional client, mostly for tests.
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.access_token = settings.WHATSAPP_ACCESS_TOKEN
        self.phone_number_id = settings.WHATSAPP_PHONE_NUMBER_ID
        self.base_url = f"{settings.WHATSAPP_API_BASE.rstrip('/')}/{settings.WHATSAPP_API_VERSION}"
        self._client = http_client or httpx.AsyncClient(timeout=settings.WHATSAPP_TIMEOUT_SECONDS)

    def _headers(self) -> dict:
        if not self.access_token:
            raise WhatsAppConfigError("WHATSAPP_ACCESS_TOKEN is not set")
        return {"Authorization": f"Bearer {self.access_token}"}

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        headers = self._headers()
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise WhatsAppTransportError(f"WhatsApp API request failed: {exc}") from exc

        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = response.text
            raise WhatsAppAPIError(response.status_code, body)
        return response.json()

    async def send_text(self, to: str, body: str) -> dict:
        """
        Sends a plain text message.

        Args:
            to (str): Recipient phone number in any format.
            body (str): Message text.

        Returns:
            dict: The provider's response body.
        """
        if not self.phone_number_id:
            raise WhatsAppConfigError("WHATSAPP_PHONE_NUMBER_ID is not set")
        if not to:
            raise ValueError("Phone number is required")
        if not body:
            raise ValueError("Message is required")

        payload = {
            "messaging_product": "whatsapp",
            "to": normalize_phone(to),
            "type": "text",
            "text": {"body": body},
        }
        return await self._request("POST", f"{self.base_url}/{self.phone_number_id}/messages",
                                   json=payload)

    async def get_media_url(self, media_id: str) -> Optional[str]:
        """
        Looks up the download URL of an inbound media attachment.
        """
        data = await self._request("GET", f"{self.base_url}/{media_id}")
        return data.get("url")

    async def aclose(self):
        await self._client.aclose()
