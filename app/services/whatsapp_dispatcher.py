# app/services/whatsapp_dispatcher.py

"""
WhatsApp delivery pipeline shared by leave approval, late arrival and
marksheet dispatch.

    1. inline PDF bytes (no callback into this server needed)
    2. remote PDF URL, only if public and answering the probe, retried
    3. image fallback under the same URL rules
    4. short pause, then the text message, always

A failing channel never stops the next one. Gateway errors are collected
into DispatchResult.errors and never raised from here.
"""

import asyncio
import base64
import ipaddress
from typing import Awaitable, Callable, Optional, Union
from urllib.parse import urlparse

import httpx
from loguru import logger

from app.core.config import settings
from app.core.exceptions import DependencyError
from app.schemas.dispatch import DispatchResult, SendOutcome
from app.services.whatsapp_client import EvolutionClient

INTERNAL_HOST_SUFFIXES = (".localhost", ".local", ".internal")


# ------------------------------------------------------------
# TRUST BOUNDARY
# ------------------------------------------------------------
def is_internal_host(hostname: Optional[str]) -> bool:
    if not hostname:
        return True
    host = hostname.strip("[]").lower()
    if host == "localhost" or host.endswith(INTERNAL_HOST_SUFFIXES):
        return True
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False
    return ip.is_loopback or ip.is_private or ip.is_link_local or ip.is_reserved or ip.is_unspecified


def public_url(url: Optional[str], base_url: Optional[str] = None, production: bool = False) -> Optional[str]:
    """
    Absolutize `url` against `base_url`. Returns None when the result is not
    an http(s) URL, or, in production, when it points at a loopback or
    private host the gateway could never fetch.
    """
    if not url:
        return None

    parsed = urlparse(url)
    if not parsed.scheme:
        if not base_url:
            return None
        url = base_url.rstrip("/") + "/" + url.lstrip("/")
        parsed = urlparse(url)

    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return None
    if production and is_internal_host(parsed.hostname):
        return None
    return url


class ReachabilityProbe:
    """HEAD first; servers that refuse HEAD get a one-byte ranged GET."""

    def __init__(self, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout or settings.WHATSAPP_PROBE_TIMEOUT_SECONDS
        self.transport = transport

    async def reachable(self, url: str) -> bool:
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True, transport=self.transport) as client:
            try:
                response = await client.head(url)
                if response.status_code < 400:
                    return True
            except httpx.HTTPError as e:
                logger.debug(f"HEAD probe failed for {url}: {e}")

            try:
                response = await client.get(url, headers={"Range": "bytes=0-0"})
                return response.status_code < 400
            except httpx.HTTPError as e:
                logger.debug(f"Ranged GET probe failed for {url}: {e}")
                return False


# ------------------------------------------------------------
# DISPATCHER
# ------------------------------------------------------------
class WhatsAppDispatcher:
    def __init__(
        self,
        gateway: Optional[EvolutionClient] = None,
        probe: Optional[ReachabilityProbe] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        attempts: Optional[int] = None,
        backoff_ms: Optional[int] = None,
        text_delay_ms: Optional[int] = None,
        base_url: Optional[str] = None,
        production: Optional[bool] = None,
    ):
        self.gateway = gateway or EvolutionClient()
        self.probe = probe or ReachabilityProbe()
        self.sleep = sleep
        self.attempts = attempts or settings.WHATSAPP_DOCUMENT_ATTEMPTS
        self.backoff_ms = settings.WHATSAPP_RETRY_BACKOFF_MS if backoff_ms is None else backoff_ms
        self.text_delay_ms = settings.WHATSAPP_TEXT_DELAY_MS if text_delay_ms is None else text_delay_ms
        self.base_url = base_url if base_url is not None else settings.PUBLIC_BASE_URL
        self.production = settings.is_production if production is None else production

    @property
    def configured(self) -> bool:
        return self.gateway.configured

    def resolve_url(self, url: Optional[str]) -> Optional[str]:
        return public_url(url, self.base_url, self.production)

    async def _checked_url(self, url: Optional[str], label: str) -> SendOutcome | str:
        resolved = self.resolve_url(url)
        if not resolved:
            return SendOutcome(success=False, error=f"{label} URL is not publicly accessible")
        if not await self.probe.reachable(resolved):
            logger.warning(f"{label} URL failed reachability probe: {resolved}")
            return SendOutcome(success=False, error=f"{label} URL unreachable, skipped")
        return resolved

    # ------------------------------------------------------------
    # SINGLE CHANNELS
    # ------------------------------------------------------------
    async def dispatch_document(
        self,
        phone: str,
        document: Union[bytes, str],
        filename: str,
        caption: str = "",
    ) -> SendOutcome:
        if isinstance(document, (bytes, bytearray)):
            try:
                message_id = await self.gateway.send_media(
                    phone,
                    base64.b64encode(document).decode("ascii"),
                    mediatype="document",
                    caption=caption,
                    file_name=filename,
                    mimetype="application/pdf",
                )
                return SendOutcome(success=True, message_id=message_id)
            except DependencyError as e:
                return SendOutcome(success=False, error=f"inline PDF: {e.message}")

        checked = await self._checked_url(document, "PDF")
        if isinstance(checked, SendOutcome):
            return checked

        last_error = None
        for attempt in range(1, self.attempts + 1):
            try:
                message_id = await self.gateway.send_media(
                    phone, checked, mediatype="document", caption=caption, file_name=filename
                )
                return SendOutcome(success=True, message_id=message_id)
            except DependencyError as e:
                last_error = e
                logger.warning(f"PDF send attempt {attempt}/{self.attempts} failed: {e.message}")
                if attempt < self.attempts:
                    await self.sleep(attempt * self.backoff_ms / 1000)

        return SendOutcome(
            success=False,
            error=f"PDF URL: {last_error.message} (after {self.attempts} attempts)",
        )

    async def dispatch_image(self, phone: str, url: str, caption: str = "") -> SendOutcome:
        checked = await self._checked_url(url, "Image")
        if isinstance(checked, SendOutcome):
            return checked
        try:
            message_id = await self.gateway.send_media(phone, checked, mediatype="image", caption=caption)
            return SendOutcome(success=True, message_id=message_id)
        except DependencyError as e:
            return SendOutcome(success=False, error=f"image: {e.message}")

    async def dispatch_text(self, phone: str, text: str) -> SendOutcome:
        try:
            message_id = await self.gateway.send_text(phone, text)
            return SendOutcome(success=True, message_id=message_id)
        except DependencyError as e:
            return SendOutcome(success=False, error=f"text: {e.message}")

    # ------------------------------------------------------------
    # PIPELINE
    # ------------------------------------------------------------
    async def deliver_bundle(
        self,
        phone: Optional[str],
        text: str,
        pdf_bytes: Optional[bytes] = None,
        pdf_url: Optional[str] = None,
        image_url: Optional[str] = None,
        filename: str = "document.pdf",
        image_caption: str = "",
    ) -> DispatchResult:
        result = DispatchResult()

        if not phone:
            result.errors.append("No parent phone number on record")
            return result
        if not self.configured:
            result.errors.append("WhatsApp gateway not configured")
            return result

        def keep(outcome: SendOutcome) -> bool:
            if outcome.success:
                if outcome.message_id:
                    result.message_ids.append(outcome.message_id)
                return True
            if outcome.error:
                result.errors.append(outcome.error)
            return False

        media_attempted = False

        if pdf_bytes:
            media_attempted = True
            result.sent_pdf = keep(await self.dispatch_document(phone, pdf_bytes, filename))

        if not result.sent_pdf and pdf_url:
            media_attempted = True
            result.sent_pdf = keep(await self.dispatch_document(phone, pdf_url, filename))

        if not result.sent_pdf and image_url:
            media_attempted = True
            result.sent_image = keep(await self.dispatch_image(phone, image_url, image_caption))

        if media_attempted:
            await self.sleep(self.text_delay_ms / 1000)

        result.sent_text = keep(await self.dispatch_text(phone, text))

        logger.info(f"WhatsApp bundle to {phone[-4:].rjust(len(phone), '*')}: {result.summary()}")
        return result
