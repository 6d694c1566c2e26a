"""Narrow interfaces to the systems the credential core only consumes.

Role administration, audit-log export and mail transport live elsewhere in
the application; the core reaches them through these protocols only.
"""

from __future__ import annotations

from typing import Optional, Protocol, Set

from reliefgate.logging import get_logger

logger = get_logger(__name__)


class RoleLookup(Protocol):
    def roles_of(self, user_id: str) -> Set[str]: ...


class AuditSink(Protocol):
    def record(
        self,
        event_type: str,
        severity: str,
        user_id: Optional[str],
        description: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None: ...


class EmailPort(Protocol):
    def send(self, to_address: str, subject: str, body: str) -> bool: ...


class StoreRoleLookup:
    """Reads role assignments straight from the credential store."""

    def __init__(self, store) -> None:
        self.store = store

    def roles_of(self, user_id: str) -> Set[str]:
        return set(self.store.list_roles(user_id))


class LoggingAuditSink:
    """Default audit sink: one structured log line per security event."""

    def __init__(self) -> None:
        self.logger = get_logger("reliefgate.audit")

    def record(
        self,
        event_type: str,
        severity: str,
        user_id: Optional[str],
        description: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.logger.info(
            "audit_event",
            audit_type=event_type,
            severity=severity,
            user_id=user_id,
            description=description,
            ip=ip,
            user_agent=user_agent,
        )


class SafeAuditSink:
    """Wraps a sink so that a failing audit backend never fails the caller."""

    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink

    def record(
        self,
        event_type: str,
        severity: str,
        user_id: Optional[str],
        description: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        try:
            self.sink.record(event_type, severity, user_id, description, ip, user_agent)
        except Exception as exc:
            logger.error(
                "audit_sink_failed",
                audit_type=event_type,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )


__all__ = [
    "RoleLookup",
    "AuditSink",
    "EmailPort",
    "StoreRoleLookup",
    "LoggingAuditSink",
    "SafeAuditSink",
]
