from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr
from pydantic.alias_generators import to_camel


class GenerationCreateRequest(BaseModel):
  """Request payload for starting an environment (and optional 3D asset) generation."""

  prompt: StrictStr = Field(description="Scene description for the environment.", examples=["desert oasis at dusk"])
  style_id: StrictInt | StrictStr = Field(description="Skybox style identifier; numeric strings are accepted.", examples=[2])
  negative_prompt: StrictStr | None = Field(default=None, description="Optional things to keep out of the scene.")
  num_variations: StrictInt = Field(default=1, description="Number of environment variations (1-10).")
  generate_asset: StrictBool = Field(default=True, description="Also generate a 3D asset from the prompt.")
  asset_quality: Literal["low", "medium", "high"] | None = Field(default=None, description="Asset quality override.")
  model_config = ConfigDict(extra="forbid")


class _CamelModel(BaseModel):
  model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StepModel(_CamelModel):
  key: str
  label: str
  status: Literal["pending", "active", "completed"]
  progress: float


class AssetProgressModel(_CamelModel):
  stage: str
  progress: float
  message: str | None = None


class GenerationSnapshotResponse(_CamelModel):
  """Read-only presentation state of the caller's generation."""

  session_id: str
  is_generating: bool
  is_generating_3d_asset: bool = Field(alias="isGenerating3DAsset")
  environment_progress: float
  asset_progress: AssetProgressModel | None = None
  current_job_id: str | None = None
  prompt: str
  negative_prompt: str | None = None
  selected_style: int | None = None
  num_variations: int
  generated_asset: dict[str, Any] | None = None
  environment_error: str | None = None
  asset_error: str | None = None
  warnings: list[str] = Field(default_factory=list)
  steps: list[StepModel]


class ResetResponse(BaseModel):
  """Result of clearing the caller's generation."""

  reset: bool
