"""
Top-level package for genbroker, the credit-metered generation job broker.

Configuration is explicit: nothing is read from the environment on import.
Call ``genbroker.config.load_env()`` and ``Settings.from_env()`` at process
start if you want `.env` support.
"""

from .admission import AdmissionController, RedisAdmissionState, client_origin
from .config import Settings, get_settings, load_env
from .errors import (
    BrokerError,
    ConcurrencyLimitedError,
    ContentPolicyError,
    ErrorCode,
    FailureKind,
    InsufficientCreditsError,
    NotFoundError,
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitedError,
    UnauthorisedError,
    ValidationFailedError,
)
from .jobs import GenerationJob, InMemoryJobStore, JobKind, JobStatus, PostgresJobStore
from .ledger import InMemoryLedgerStore, Ledger, Owner, PostgresLedgerStore
from .logging import configure_logging, get_logger
from .orchestrator import GenerationOrchestrator, GenerationOutcome, ReconcileReport
from .providers import (
    ImageProvider,
    OpenAIImageProvider,
    ReplicateImageProvider,
    StoryGenerator,
)
from .status import JobStatusReader, JobStatusView
from .storage import BlobStorage, InMemoryBlobStorage, LocalBlobStorage

__version__ = "0.1.0"

__all__ = [
    # Orchestration
    "GenerationOrchestrator",
    "GenerationOutcome",
    "ReconcileReport",
    "JobStatusReader",
    "JobStatusView",
    # Ledger
    "Ledger",
    "Owner",
    "InMemoryLedgerStore",
    "PostgresLedgerStore",
    # Admission
    "AdmissionController",
    "RedisAdmissionState",
    "client_origin",
    # Jobs
    "GenerationJob",
    "JobKind",
    "JobStatus",
    "InMemoryJobStore",
    "PostgresJobStore",
    # Providers
    "ImageProvider",
    "OpenAIImageProvider",
    "ReplicateImageProvider",
    "StoryGenerator",
    # Storage
    "BlobStorage",
    "LocalBlobStorage",
    "InMemoryBlobStorage",
    # Config / logging
    "Settings",
    "get_settings",
    "load_env",
    "configure_logging",
    "get_logger",
    # Errors
    "BrokerError",
    "ErrorCode",
    "FailureKind",
    "ValidationFailedError",
    "RateLimitedError",
    "ConcurrencyLimitedError",
    "InsufficientCreditsError",
    "UnauthorisedError",
    "NotFoundError",
    "ProviderError",
    "ContentPolicyError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
]
