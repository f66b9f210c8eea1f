"""
In-process transport and template registry.

Used when no WhatsApp credentials are configured (local development)
and as collaborators in tests.
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any, Optional

from channels.base import SendMetrics, TemplateRegistry, Transport
from core.errors import ExternalServiceError
from models.schemas import MessageArtifact, RemoteTemplate, SendResult, TemplateStatus

logger = structlog.get_logger()


class InMemoryTransport(Transport):
    """Records every send. Set `fail_with` to make sends fail."""

    name = "memory"

    def __init__(self, fail_with: Optional[str] = None):
        self.fail_with = fail_with
        self.sent: list[tuple[str, MessageArtifact]] = []
        self._metrics = SendMetrics()

    async def send(self, recipient: str, artifact: MessageArtifact) -> SendResult:
        if self.fail_with:
            self._metrics.record_failure(self.fail_with)
            return SendResult(success=False, error=self.fail_with)
        self.sent.append((recipient, artifact))
        self._metrics.record_send()
        msg_id = f"mem.{uuid.uuid4().hex[:12]}"
        logger.info("memory_message_sent", to=recipient, kind=artifact.kind.value, msg_id=msg_id)
        return SendResult(success=True, message_id=msg_id)

    async def health_check(self) -> dict[str, Any]:
        return {"transport": self.name, "metrics": self._metrics.to_dict()}


class InMemoryTemplateRegistry(TemplateRegistry):
    """Dict-backed template registry with switchable failures."""

    def __init__(self, approve: bool = True):
        self.approve = approve
        self.fail_create = False
        self.fail_delete = False
        self.templates: dict[str, dict[str, Any]] = {}
        self.deleted: list[str] = []

    async def create_remote_template(self, account_id: str, name: str, content: str,
                                     language_code: str = "en") -> RemoteTemplate:
        if self.fail_create:
            raise ExternalServiceError("Template creation failed", service="memory")
        remote_id = uuid.uuid4().hex[:12]
        status = TemplateStatus.APPROVED if self.approve else TemplateStatus.PENDING
        self.templates[remote_id] = {
            "account_id": account_id, "name": name, "content": content,
            "language": language_code, "status": status.value,
        }
        return RemoteTemplate(id=remote_id, status=status)

    async def delete_remote_template(self, account_id: str, remote_id: str, name: str = "") -> None:
        if self.fail_delete:
            raise ExternalServiceError(f"Template deletion failed for {remote_id}", service="memory")
        self.templates.pop(remote_id, None)
        self.deleted.append(remote_id)
