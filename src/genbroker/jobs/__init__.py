"""
Generation job lifecycle.

This module provides:
- GenerationJob and its PENDING -> PROCESSING -> COMPLETED|FAILED state machine
- JobStore implementations (in-memory, PostgreSQL)
- The settlement outbox used when a settle step cannot be confirmed in-line
"""

from .outbox import (
    InMemorySettlementOutbox,
    OutboxEntry,
    OutboxStatus,
    SettleAction,
    SettlementOutbox,
    outbox_retry_delay_seconds,
)
from .postgres import PostgresJobStore, PostgresSettlementOutbox
from .store import InMemoryJobStore, JobFilter, JobStore
from .types import VALID_TRANSITIONS, GenerationJob, JobKind, JobStatus

__all__ = [
    # Types
    "JobKind",
    "JobStatus",
    "GenerationJob",
    "VALID_TRANSITIONS",
    # Store
    "JobFilter",
    "JobStore",
    "InMemoryJobStore",
    "PostgresJobStore",
    # Outbox
    "SettleAction",
    "OutboxStatus",
    "OutboxEntry",
    "SettlementOutbox",
    "InMemorySettlementOutbox",
    "PostgresSettlementOutbox",
    "outbox_retry_delay_seconds",
]
