# app/services/whatsapp_client.py

"""
HTTP client for the Evolution API WhatsApp gateway.

Every failed call surfaces as DependencyError; callers above the dispatcher
never see httpx exceptions.
"""

import re
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from app.core.config import settings
from app.core.exceptions import DependencyError

WHATSAPP_SUFFIX = "@s.whatsapp.net"


def _provider_message(data: Any) -> str:
    if not isinstance(data, dict):
        return str(data or "")
    nested = data.get("response")
    if isinstance(nested, dict) and nested.get("message"):
        return str(nested["message"])
    return str(data.get("message") or data.get("error") or "")


class EvolutionClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        instance_name: Optional[str] = None,
        timeout: Optional[float] = None,
        default_country_code: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.EVOLUTION_API_URL or "").rstrip("/")
        self.api_key = api_key if api_key is not None else settings.EVOLUTION_API_KEY
        self.instance_name = instance_name or settings.EVOLUTION_INSTANCE_NAME
        self.timeout = timeout or settings.WHATSAPP_TIMEOUT_SECONDS
        self.country_code = default_country_code or settings.WHATSAPP_DEFAULT_COUNTRY_CODE
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "apikey": self.api_key or "",
            "Authorization": f"Bearer {self.api_key or ''}",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=self.timeout,
            transport=self.transport,
        )

    # ------------------------------------------------------------
    # NUMBERS
    # ------------------------------------------------------------
    def format_number(self, phone: Optional[str]) -> Optional[str]:
        """'98765 43210' -> '919876543210@s.whatsapp.net'"""
        if not phone:
            return None
        if phone.endswith(WHATSAPP_SUFFIX):
            return phone

        digits = re.sub(r"\D", "", phone)
        if not digits:
            return None
        if len(digits) == 10 and not digits.startswith(self.country_code):
            digits = self.country_code + digits
        return f"{digits}{WHATSAPP_SUFFIX}"

    # ------------------------------------------------------------
    # RAW CALLS
    # ------------------------------------------------------------
    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Any:
        if not self.configured:
            raise DependencyError("Evolution API not configured", service="evolution")

        async with self._client() as client:
            try:
                response = await client.request(method, path, json=payload)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                try:
                    data = e.response.json()
                except ValueError:
                    data = e.response.text
                message = _provider_message(data) or e.response.reason_phrase
                raise DependencyError(
                    f"WhatsApp gateway error ({e.response.status_code}): {message}",
                    service="evolution",
                    status=e.response.status_code,
                    response_data=data,
                )
            except httpx.RequestError as e:
                raise DependencyError(
                    f"WhatsApp gateway unreachable: {e.__class__.__name__}",
                    service="evolution",
                )

        try:
            return response.json()
        except ValueError:
            return {}

    @staticmethod
    def _message_id(data: Any) -> Optional[str]:
        if isinstance(data, dict):
            key = data.get("key")
            if isinstance(key, dict):
                return key.get("id")
        return None

    # ------------------------------------------------------------
    # MESSAGES
    # ------------------------------------------------------------
    async def send_text(self, phone: str, text: str) -> Optional[str]:
        number = self.format_number(phone)
        if not number:
            raise DependencyError("No valid WhatsApp number", service="evolution")

        path = f"/message/sendText/{self.instance_name}"
        try:
            data = await self._request("POST", path, {"number": number, "text": text, "delay": 1000})
            return self._message_id(data)
        except DependencyError as primary:
            # Older gateway builds want the body under `textMessage`
            if not re.search(r"textMessage", _provider_message(primary.response_data), re.IGNORECASE):
                raise

            alternates = [
                {"number": number, "textMessage": text, "delay": 1000},
                {"number": number, "textMessage": {"text": text}, "delay": 1000},
                {"number": number, "message": {"text": text}, "delay": 1000},
            ]
            for payload in alternates:
                try:
                    data = await self._request("POST", path, payload)
                    return self._message_id(data)
                except DependencyError as e:
                    logger.debug(f"sendText alternate payload rejected: {e.message}")
            raise primary

    async def send_media(
        self,
        phone: str,
        media: str,
        mediatype: str = "document",
        caption: str = "",
        file_name: Optional[str] = None,
        mimetype: Optional[str] = None,
    ) -> Optional[str]:
        """`media` is either a public URL or raw base64 (inline upload)."""
        number = self.format_number(phone)
        if not number:
            raise DependencyError("No valid WhatsApp number", service="evolution")

        payload: Dict[str, Any] = {
            "number": number,
            "mediatype": mediatype,
            "media": media,
            "caption": caption,
            "delay": 1000,
        }
        if file_name:
            payload["fileName"] = file_name
        if mimetype:
            payload["mimetype"] = mimetype

        data = await self._request("POST", f"/message/sendMedia/{self.instance_name}", payload)
        return self._message_id(data)

    # ------------------------------------------------------------
    # INSTANCE
    # ------------------------------------------------------------
    async def instance_status(self) -> Dict[str, Any]:
        if not self.configured:
            return {"success": False, "connected": False, "state": "not_configured",
                    "error": "Evolution API not configured"}

        try:
            instances = await self._request("GET", f"/instance/fetchInstances?instanceName={self.instance_name}")
            if isinstance(instances, list):
                instance = next(
                    (
                        i for i in instances
                        if i.get("name") == self.instance_name
                        or (i.get("instance") or {}).get("instanceName") == self.instance_name
                    ),
                    None,
                )
            else:
                instance = instances or None

            if instance:
                state = (
                    instance.get("connectionStatus")
                    or (instance.get("instance") or {}).get("state")
                    or instance.get("state")
                    or "unknown"
                )
                return {
                    "success": True,
                    "connected": state == "open",
                    "state": state,
                    "instance": self.instance_name,
                    "owner_jid": instance.get("ownerJid"),
                }

            data = await self._request("GET", f"/instance/connectionState/{self.instance_name}")
            state = (data.get("instance") or {}).get("state") or data.get("state") or "unknown"
            return {"success": True, "connected": state == "open", "state": state, "instance": self.instance_name}

        except DependencyError as e:
            if e.status == 404:
                return {"success": False, "connected": False, "state": "not_found",
                        "error": f'Instance "{self.instance_name}" not found'}
            logger.error(f"Evolution status check failed: {e.message}")
            return {"success": False, "connected": False, "state": "error", "error": e.message}

    def config_summary(self) -> Dict[str, Any]:
        return {
            "provider": "Evolution API",
            "configured": self.configured,
            "base_url": (self.base_url[:30] + "...") if self.base_url else "Not set",
            "api_key": ("****" + self.api_key[-4:]) if self.api_key else "Not set",
            "instance": self.instance_name,
        }
