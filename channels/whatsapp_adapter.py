"""
WhatsApp Business Cloud API integration.

Provides:
- WhatsAppTransport: outbound free-form text (inside the 24h window) and
  approved template messages, wrapped with rate limiting, a circuit
  breaker and retries on transient failures
- WhatsAppTemplateRegistry: create/delete message templates on the
  WhatsApp Business Account (WABA)
"""
from __future__ import annotations

import re
import time
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from channels.base import (
    CircuitBreaker, SendMetrics, TemplateRegistry, TokenBucketRateLimiter, Transport,
)
from config.settings import WhatsAppConfig
from core.errors import ExternalServiceError
from models.schemas import (
    MessageArtifact, RemoteTemplate, SendResult, StrategyType, TemplateStatus,
)

logger = structlog.get_logger()

_REMOTE_STATUS = {
    "APPROVED": TemplateStatus.APPROVED,
    "PENDING": TemplateStatus.PENDING,
    "IN_APPEAL": TemplateStatus.PENDING,
}


def _is_transient(exc: BaseException) -> bool:
    """Network errors, 429 and 5xx are worth retrying; other 4xx are not."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    return False


def normalize_phone(phone: str) -> str:
    """Normalize phone to digits only, stripping +, spaces, dashes."""
    return re.sub(r"[^\d]", "", phone or "")


class _GraphClient:
    """Shared httpx plumbing for the Graph API."""

    def __init__(self, config: WhatsAppConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.api_base,
                headers={
                    "Authorization": f"Bearer {self.config.access_token}",
                    "Content-Type": "application/json",
                },
                timeout=httpx.Timeout(self.config.send_timeout_s, connect=10.0),
            )
        return self._client

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        resp = await client.request(method, path, **kwargs)
        if resp.status_code >= 400:
            logger.error("whatsapp_api_error", status=resp.status_code, body=resp.text[:500], path=path)
            resp.raise_for_status()
        return resp.json() if resp.content else {}

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


# ══════════════════════════════════════════════════════════════
#  TRANSPORT
# ══════════════════════════════════════════════════════════════

class WhatsAppTransport(_GraphClient, Transport):
    """
    Sends follow-ups through the Cloud API messages endpoint.

    Free-form artifacts go out as text messages; everything else goes out
    as a template message whose body parameters are the artifact variables.
    """

    name = "whatsapp"

    def __init__(self, config: WhatsAppConfig, client: Optional[httpx.AsyncClient] = None):
        super().__init__(config, client)
        self._breaker = CircuitBreaker(name="whatsapp")
        self._rate_limiter = TokenBucketRateLimiter(
            rate=config.rate_per_second, burst=max(1, int(config.rate_per_second)),
        ) if config.rate_per_second > 0 else None
        self._metrics = SendMetrics()

    def _payload(self, phone: str, artifact: MessageArtifact) -> dict[str, Any]:
        if artifact.kind == StrategyType.FREE_FORM:
            return {
                "messaging_product": "whatsapp",
                "to": phone,
                "type": "text",
                "text": {"body": artifact.content},
            }
        components = []
        if artifact.variables:
            components.append({
                "type": "body",
                "parameters": [{"type": "text", "text": v} for v in artifact.variables],
            })
        return {
            "messaging_product": "whatsapp",
            "to": phone,
            "type": "template",
            "template": {
                "name": artifact.template_name,
                "language": {"code": artifact.language_code or self.config.language_code},
                "components": components,
            },
        }

    async def send(self, recipient: str, artifact: MessageArtifact) -> SendResult:
        phone = normalize_phone(recipient)
        if not phone:
            return SendResult(success=False, error="No WhatsApp number")

        if self._rate_limiter and not await self._rate_limiter.acquire(timeout=10.0):
            self._metrics.record_failure("rate_limited")
            return SendResult(success=False, error="rate_limited")

        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            return SendResult(success=False, error="circuit_open")

        start = time.monotonic()
        try:
            data = await self._request(
                "POST", f"/{self.config.phone_number_id}/messages",
                json=self._payload(phone, artifact),
            )
        except Exception as e:
            self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            logger.warning("whatsapp_send_failed", to=phone, kind=artifact.kind.value, error=str(e))
            return SendResult(success=False, error=str(e))

        latency = (time.monotonic() - start) * 1000
        self._breaker.record_success()
        self._metrics.record_send(latency)
        messages = data.get("messages") or [{}]
        msg_id = messages[0].get("id", "")
        logger.info("whatsapp_message_sent", to=phone, kind=artifact.kind.value,
                    msg_id=msg_id, latency_ms=round(latency, 1))
        return SendResult(success=True, message_id=msg_id)

    async def health_check(self) -> dict[str, Any]:
        return {
            "transport": self.name,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }


# ══════════════════════════════════════════════════════════════
#  TEMPLATE REGISTRY
# ══════════════════════════════════════════════════════════════

class WhatsAppTemplateRegistry(_GraphClient, TemplateRegistry):
    """Message template management on the WABA."""

    async def create_remote_template(self, account_id: str, name: str, content: str,
                                     language_code: str = "en") -> RemoteTemplate:
        payload = {
            "name": name,
            "language": language_code,
            "category": "MARKETING",
            "components": [{"type": "BODY", "text": content}],
        }
        try:
            data = await self._request("POST", f"/{self.config.waba_id}/message_templates", json=payload)
        except Exception as e:
            raise ExternalServiceError(f"Template creation failed: {e}", service="whatsapp") from e

        remote_id = str(data.get("id", ""))
        if not remote_id:
            raise ExternalServiceError("Template creation returned no id", service="whatsapp", retryable=False)
        status = _REMOTE_STATUS.get(str(data.get("status", "PENDING")).upper(), TemplateStatus.PENDING)
        logger.info("remote_template_created", account_id=account_id, name=name,
                    remote_id=remote_id, status=status.value)
        return RemoteTemplate(id=remote_id, status=status)

    async def delete_remote_template(self, account_id: str, remote_id: str, name: str = "") -> None:
        params = {"hsm_id": remote_id}
        if name:
            params["name"] = name
        try:
            await self._request("DELETE", f"/{self.config.waba_id}/message_templates", params=params)
        except Exception as e:
            raise ExternalServiceError(f"Template deletion failed: {e}", service="whatsapp") from e
        logger.info("remote_template_deleted", account_id=account_id, remote_id=remote_id)
