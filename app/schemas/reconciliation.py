from __future__ import annotations

from pydantic import BaseModel, Field, computed_field


class ReconciliationReport(BaseModel):
    """Outcome of one import run. Returned to the caller, never stored."""

    total_seen: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0
    created_names: list[str] = Field(default_factory=list)
    skipped_names: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    def record_created(self, name: str) -> None:
        self.created += 1
        self.created_names.append(name)

    def record_skipped(self, name: str, note: str | None = None) -> None:
        self.skipped += 1
        self.skipped_names.append(f"{name} ({note})" if note else name)

    def record_failed(self, name: str, error: str) -> None:
        self.failed += 1
        self.errors.append(f"{name}: {error}")


class FullSyncReport(BaseModel):
    """Profiles then credentials from one device, reported together."""

    device_id: str
    profiles: ReconciliationReport = Field(default_factory=ReconciliationReport)
    credentials: ReconciliationReport = Field(default_factory=ReconciliationReport)
    duration_seconds: float = 0.0

    @computed_field
    @property
    def success(self) -> bool:
        return not (self.profiles.errors or self.credentials.errors)
