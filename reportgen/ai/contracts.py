"""Contracts exchanged with the opaque text-generation call."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class GenerationRequest(BaseModel):
  """Inputs handed to the generation call for one student and one period."""

  model_config = ConfigDict(frozen=True)

  entity_id: str
  period: str
  model: str
  grade: float | None = None
  context: str = ""
  statuses: list[str] = Field(default_factory=list)
  notes: list[str] = Field(default_factory=list)
  active_tags: list[str] = Field(default_factory=list)


class GenerationResult(BaseModel):
  """What the generation call returns; ``error_message`` excludes a usable ``text``."""

  # Provider adapters written against the browser client still send camelCase keys.
  model_config = ConfigDict(populate_by_name=True, extra="ignore")

  text: str = ""
  model: str | None = None
  # Usage is opaque provider metadata: nested per call and often null.
  token_usage: dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("token_usage", "tokenUsage"))
  error_message: str | None = Field(default=None, validation_alias=AliasChoices("error_message", "errorMessage"))

  @field_validator("token_usage", mode="before")
  @classmethod
  def _usage_or_empty(cls, value: Any) -> Any:
    return {} if value is None else value
