"""Audit trail, sinks and broadcast."""

from mender.audit.event_bus import EventBus
from mender.audit.records import AuditRecord, AuditSink, Broadcaster, Phase
from mender.audit.sinks import InMemoryAuditSink, JsonlAuditSink
from mender.audit.trail import BROADCAST_EVENT, AuditTrail

__all__ = [
    "AuditRecord",
    "AuditSink",
    "AuditTrail",
    "BROADCAST_EVENT",
    "Broadcaster",
    "EventBus",
    "InMemoryAuditSink",
    "JsonlAuditSink",
    "Phase",
]
