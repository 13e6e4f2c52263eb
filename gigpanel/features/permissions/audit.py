"""
Audit events emitted by the permission core.

Storing audit records is the audit service's job; the core only hands events
to an AuditSink. The default sink writes them to the log.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from gigpanel.utils import get_logger


@dataclass(frozen=True)
class AuditEvent:
    action: str
    resource_type: str
    actor_id: Optional[str] = None
    resource_id: Optional[str] = None
    target_user_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditSink(Protocol):
    async def emit(self, event: AuditEvent) -> None:
        ...


class LoggingAuditSink:
    """Writes every event to the ``gigpanel.audit`` logger."""

    def __init__(self, logger=None):
        self._log = logger or get_logger("gigpanel.audit")

    async def emit(self, event: AuditEvent) -> None:
        self._log.info(
            "Audit: actor=%s action=%s resource=%s:%s target=%s details=%s",
            event.actor_id,
            event.action,
            event.resource_type,
            event.resource_id,
            event.target_user_id,
            event.details,
        )
