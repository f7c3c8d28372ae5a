from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictStr, model_validator

from babellion.jobs.models import UnitStatus, WorkUnit


class ProofreadingRuleModel(BaseModel):
  """A house rule applied by rule-based proofreading."""

  title: StrictStr = Field(min_length=1, examples=["Oxford comma"])
  rule_text: StrictStr = Field(min_length=1, examples=["Always use the Oxford comma in lists of three or more."])
  model_config = ConfigDict(extra="forbid")


class SourceRequest(BaseModel):
  """Source content registered for a parent."""

  text: StrictStr = Field(default="", description="Document text; HTML markup is preserved verbatim.")
  image_base64: StrictStr | None = Field(default=None, description="Optional base64 image for image translation.")
  mime_type: StrictStr = Field(default="image/png")
  rules: list[ProofreadingRuleModel] = Field(default_factory=list, max_length=100)
  model_config = ConfigDict(extra="forbid")

  @model_validator(mode="after")
  def require_content(self) -> SourceRequest:
    if not self.text.strip() and not self.image_base64:
      raise ValueError("Either text or image_base64 must be provided.")
    return self


class SourceResponse(BaseModel):
  parent_id: str
  has_text: bool
  has_image: bool
  rule_count: int


class UnitSubmitRequest(BaseModel):
  """Submission of one (parent, target) work unit."""

  target: StrictStr = Field(min_length=1, description="Language code or edit-iteration tag.", examples=["de"])
  model_id: StrictStr | None = Field(default=None, description="Configured model id; the default model is used when omitted.")
  stage: StrictStr = Field(default="translation", examples=["translation", "rule_proofread"])
  derived_from: StrictStr | None = Field(default=None, description="Upstream unit for derived stages such as proofread.")
  model_config = ConfigDict(extra="forbid")


class UnitCreateResponse(BaseModel):
  unit_id: str
  status: UnitStatus


class UnitStatusResponse(BaseModel):
  """Status view of one unit."""

  id: str
  parent_id: str
  target: str
  stage: str
  status: UnitStatus
  model_id: str
  updated_at: datetime
  result_ref: str | None = None
  derived_from: str | None = None
  superseded_by: str | None = None
  error: dict[str, Any] | None = None

  @classmethod
  def from_unit(cls, unit: WorkUnit) -> UnitStatusResponse:
    return cls(
      id=unit.unit_id,
      parent_id=unit.parent_id,
      target=unit.target,
      stage=unit.stage,
      status=unit.status,
      model_id=unit.model_id,
      updated_at=unit.updated_at,
      result_ref=unit.result_ref,
      derived_from=unit.derived_from,
      superseded_by=unit.superseded_by,
      error=unit.error,
    )


class UnitDetailResponse(UnitStatusResponse):
  """Full unit including its payload."""

  created_at: datetime
  started_at: datetime | None = None
  completed_at: datetime | None = None
  result_payload: dict[str, Any] | None = None

  @classmethod
  def from_unit(cls, unit: WorkUnit) -> UnitDetailResponse:
    base = UnitStatusResponse.from_unit(unit).model_dump()
    return cls(**base, created_at=unit.created_at, started_at=unit.started_at, completed_at=unit.completed_at, result_payload=unit.result_payload)


class RunRequest(BaseModel):
  """Fan-out of one primary stage across several targets."""

  targets: list[StrictStr] = Field(min_length=1, description="Targets to generate in parallel.", examples=[["de", "fr", "es"]])
  model_id: StrictStr | None = Field(default=None)
  stage: StrictStr = Field(default="translation", examples=["translation", "image_translation", "rule_proofread"])
  model_config = ConfigDict(extra="forbid")


class RunResponse(BaseModel):
  parent_id: str
  stage: str
  model_id: str
  targets: list[str]


class TargetStateResponse(BaseModel):
  """Client-side state of one target, including local stalls."""

  target: str
  phase: str
  stage: str | None = None
  unit_id: str | None = None
  error: dict[str, Any] | None = None
  runtimes: dict[str, float] = Field(default_factory=dict)


class TargetActionResponse(BaseModel):
  target: str
  accepted: bool
  phase: str


class OutputTextEditRequest(BaseModel):
  """Manual revision of a completed unit's text."""

  text: StrictStr = Field(min_length=1, description="Replacement text; markup is stored verbatim.")
  model_config = ConfigDict(extra="forbid")


class SuggestionStatusRequest(BaseModel):
  """Accept, reject or reset one proofreading suggestion."""

  status: StrictStr = Field(examples=["accepted", "rejected", "pending"])
  model_config = ConfigDict(extra="forbid")
