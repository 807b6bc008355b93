"""Domain models for environment/asset generation sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

EnvironmentStatus = Literal["pending", "dispatched", "processing", "completed", "failed", "aborted", "timeout"]
AssetStatus = Literal["running", "completed", "failed"]
StepStatus = Literal["pending", "active", "completed"]
OutcomeStatus = Literal["success", "success_with_warning"]

TERMINAL_ENVIRONMENT_STATUSES: frozenset[str] = frozenset({"completed", "failed", "aborted", "timeout"})


@dataclass
class EnvironmentJob:
  """One remote skybox generation being polled to completion."""

  external_id: str
  status: EnvironmentStatus = "pending"
  attempts: int = 0
  next_poll_interval_ms: float | None = None
  last_polled_at: float | None = None
  progress: float = 0.0
  result_url: str | None = None
  thumbnail_url: str | None = None
  title: str | None = None
  error_message: str | None = None

  @property
  def is_terminal(self) -> bool:
    return self.status in TERMINAL_ENVIRONMENT_STATUSES


@dataclass
class AssetJob:
  """The 3D asset request; progress arrives as pushed events rather than polls."""

  external_id: str | None = None
  stage: str = "queued"
  progress_percent: float = 0.0
  message: str | None = None
  status: AssetStatus = "running"
  result_asset: dict[str, Any] | None = None
  error_message: str | None = None


@dataclass
class GenerationSession:
  """Full state of one user-initiated generation spanning both pipelines."""

  session_id: str
  user_id: str
  prompt: str
  negative_prompt: str | None
  style_id: int | None
  num_variations: int
  started_at: float
  expires_at: float
  is_running_environment: bool = False
  is_running_asset: bool = False
  generate_asset: bool = True
  asset_quality: str = "medium"
  environment_jobs: list[EnvironmentJob] = field(default_factory=list)
  asset_job: AssetJob | None = None
  environment_error: str | None = None
  asset_error: str | None = None
  warnings: list[str] = field(default_factory=list)
  record_id: str | None = None

  @property
  def is_active(self) -> bool:
    return self.is_running_environment or self.is_running_asset

  @property
  def has_resumable_selection(self) -> bool:
    """True when the record still carries an in-flight prompt or style choice."""
    return bool(self.prompt) or self.style_id is not None


@dataclass
class PersistedRecord:
  """Envelope written to the per-user cache key."""

  state: GenerationSession
  timestamp: float


@dataclass(frozen=True)
class Step:
  """One stage of the three-step progress model shown to users."""

  key: str
  label: str
  status: StepStatus
  progress: float


@dataclass(frozen=True)
class EnvironmentResult:
  """A completed skybox variation."""

  external_id: str
  image_url: str
  title: str
  prompt: str
  thumbnail_url: str | None = None


@dataclass(frozen=True)
class AssetResult:
  """A generated 3D asset with its resolved download URL."""

  asset_id: str
  url: str
  format: str | None
  metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GenerationOutcome:
  """Final result of a run whose environment branch succeeded."""

  session_id: str
  status: OutcomeStatus
  environment_results: list[EnvironmentResult]
  asset_result: AssetResult | None = None
  asset_error: str | None = None
  warnings: list[str] = field(default_factory=list)
  record_id: str | None = None
