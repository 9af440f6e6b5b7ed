"""
Credit, admission, routing and orchestration settings.
"""

from __future__ import annotations

from dataclasses import dataclass

from .base import ImageProviderName


@dataclass
class CreditsConfig:
    """Starting grants per owner kind."""

    guest_initial_credits: int = 3
    registered_initial_credits: int = 25
    history_limit: int = 20

    def __post_init__(self):
        if self.guest_initial_credits < 0 or self.registered_initial_credits < 0:
            raise ValueError("initial credits cannot be negative")
        if self.history_limit <= 0:
            raise ValueError("history_limit must be positive")


@dataclass
class AdmissionConfig:
    """Rate limit windows and the in-flight job cap."""

    generation_max_requests: int = 10
    generation_window_seconds: int = 3600

    origin_max_requests: int = 100
    origin_window_seconds: int = 3600

    max_concurrent_jobs: int = 2

    # Rapid-fire detection
    abuse_requests_per_second: int = 5
    abuse_block_seconds: int = 3600

    # Reconciliation sweep
    stale_job_seconds: int = 900
    key_ttl_seconds: int = 7200

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.generation_max_requests <= 0 or self.origin_max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if self.generation_window_seconds <= 0 or self.origin_window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if self.max_concurrent_jobs <= 0:
            raise ValueError("max_concurrent_jobs must be positive")
        if self.abuse_requests_per_second <= 0:
            raise ValueError("abuse_requests_per_second must be positive")
        if self.stale_job_seconds <= 0:
            raise ValueError("stale_job_seconds must be positive")


@dataclass
class RoutingConfig:
    """Primary/fallback provider preference."""

    preferred_image_provider: ImageProviderName = "replicate"
    fallback_enabled: bool = True
    story_fallback_model: str | None = None

    def __post_init__(self):
        if self.preferred_image_provider not in ("openai", "replicate"):
            raise ValueError(f"Invalid image provider: {self.preferred_image_provider}")


@dataclass
class OrchestratorConfig:
    """Deadlines and settle retry policy."""

    # Overall deadline around one provider attempt; covers the poll loop.
    generation_timeout: float = 330.0

    settle_attempts: int = 3
    settle_backoff: float = 0.2
    outbox_max_retries: int = 8

    def __post_init__(self):
        if self.generation_timeout <= 0:
            raise ValueError("generation_timeout must be positive")
        if self.settle_attempts <= 0:
            raise ValueError("settle_attempts must be positive")
        if self.settle_backoff < 0:
            raise ValueError("settle_backoff cannot be negative")
        if self.outbox_max_retries <= 0:
            raise ValueError("outbox_max_retries must be positive")

    @property
    def longest_run_seconds(self) -> float:
        """Upper bound on one run: primary and fallback attempts plus settle backoff."""
        return 2 * self.generation_timeout + self.settle_backoff * (2 ** self.settle_attempts)


def check_stale_cutoff(admission: AdmissionConfig, orchestrator: OrchestratorConfig) -> None:
    """A job still inside its run budget must never look stale to the sweep."""
    if admission.stale_job_seconds <= orchestrator.longest_run_seconds:
        raise ValueError(
            f"stale_job_seconds ({admission.stale_job_seconds}) must exceed the longest run "
            f"({orchestrator.longest_run_seconds:.0f}s: two generation timeouts plus settle backoff)"
        )


__all__ = ["CreditsConfig", "AdmissionConfig", "RoutingConfig", "OrchestratorConfig", "check_stale_cutoff"]
