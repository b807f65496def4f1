"""Runtime configuration for scheduler, job store, and jobs backend."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

MISSING_CONTEXT_POLICIES = ("allow", "warn", "block")
JOBS_BACKEND_KINDS = ("none", "http", "local")


@dataclass(slots=True)
class SchedulerSettings:
    """Task selection defaults."""

    missing_context_policy: str = "warn"


@dataclass(slots=True)
class JobsBackendConfig:
    """Explicit jobs backend wiring; ``kind == "none"`` means not configured."""

    kind: str = "none"
    base_url: str | None = None
    timeout_seconds: float = 30.0
    max_retries: int = 2
    follow_interval_seconds: float = 2.0

    @property
    def is_configured(self) -> bool:
        return self.kind != "none"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".workgraph.db")
    workspace_id: str | None = None
    busy_timeout_ms: int = 5_000
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    jobs_backend: JobsBackendConfig = field(default_factory=JobsBackendConfig)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        resolved_db_path = db_path or Path(os.getenv("WORKGRAPH_DB_PATH", ".workgraph.db"))
        base_url = os.getenv("WORKGRAPH_JOBS_API_URL", "").strip() or None
        kind = os.getenv("WORKGRAPH_JOBS_BACKEND", "").strip().lower()
        if not kind:
            kind = "http" if base_url else "none"
        return cls(
            db_path=resolved_db_path,
            workspace_id=os.getenv("WORKGRAPH_WORKSPACE_ID") or None,
            busy_timeout_ms=int(os.getenv("WORKGRAPH_BUSY_TIMEOUT_MS", "5000")),
            scheduler=SchedulerSettings(
                missing_context_policy=os.getenv(
                    "WORKGRAPH_MISSING_CONTEXT_POLICY",
                    "warn",
                )
                .strip()
                .lower(),
            ),
            jobs_backend=JobsBackendConfig(
                kind=kind,
                base_url=base_url,
                timeout_seconds=float(os.getenv("WORKGRAPH_JOBS_API_TIMEOUT_SECONDS", "30.0")),
                max_retries=int(os.getenv("WORKGRAPH_JOBS_API_MAX_RETRIES", "2")),
                follow_interval_seconds=float(
                    os.getenv("WORKGRAPH_FOLLOW_INTERVAL_SECONDS", "2.0"),
                ),
            ),
        )

    @property
    def effective_workspace_id(self) -> str:
        if self.workspace_id:
            return self.workspace_id
        return str(self.db_path.resolve().parent)

    def validate(self) -> None:
        """Raise configuration error on invalid values."""

        if self.busy_timeout_ms <= 0:
            raise ValueError("WORKGRAPH_BUSY_TIMEOUT_MS must be > 0.")
        if self.scheduler.missing_context_policy not in MISSING_CONTEXT_POLICIES:
            raise ValueError(
                "Invalid WORKGRAPH_MISSING_CONTEXT_POLICY: "
                f"{self.scheduler.missing_context_policy!r}. "
                f"Expected one of: {', '.join(MISSING_CONTEXT_POLICIES)}.",
            )
        backend = self.jobs_backend
        if backend.kind not in JOBS_BACKEND_KINDS:
            raise ValueError(
                f"Invalid WORKGRAPH_JOBS_BACKEND: {backend.kind!r}. "
                f"Expected one of: {', '.join(JOBS_BACKEND_KINDS)}.",
            )
        if backend.kind == "http":
            if not backend.base_url:
                raise ValueError(
                    "WORKGRAPH_JOBS_API_URL is required when WORKGRAPH_JOBS_BACKEND=http.",
                )
            _validate_base_url(backend.base_url)
        if backend.timeout_seconds <= 0:
            raise ValueError("WORKGRAPH_JOBS_API_TIMEOUT_SECONDS must be > 0.")
        if backend.max_retries < 0:
            raise ValueError("WORKGRAPH_JOBS_API_MAX_RETRIES must be >= 0.")
        if backend.follow_interval_seconds < 0:
            raise ValueError("WORKGRAPH_FOLLOW_INTERVAL_SECONDS must be >= 0.")


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid jobs API URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
