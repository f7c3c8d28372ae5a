"""Source content lookup for parents (documents, images, proofreading rules)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class ProofreadingRule:
  """A named house rule applied by rule-based proofreading."""

  title: str
  rule_text: str


@dataclass(frozen=True)
class SourceDocument:
  """Content a parent's targets are generated from."""

  parent_id: str
  text: str = ""
  image_base64: str | None = None
  mime_type: str = "image/png"
  rules: tuple[ProofreadingRule, ...] = field(default_factory=tuple)

  @property
  def has_image(self) -> bool:
    return bool(self.image_base64)


class SourceRepository(Protocol):
  """Repository contract for parent source content."""

  async def get_source(self, parent_id: str) -> SourceDocument | None:
    """Return the parent's source content, if registered."""

  async def put_source(self, source: SourceDocument) -> None:
    """Register or replace the parent's source content."""


class InMemorySourceRepository:
  """Process-local source registry."""

  def __init__(self, sources: list[SourceDocument] | None = None) -> None:
    self._sources: dict[str, SourceDocument] = {source.parent_id: source for source in sources or []}

  async def get_source(self, parent_id: str) -> SourceDocument | None:
    return self._sources.get(parent_id)

  async def put_source(self, source: SourceDocument) -> None:
    self._sources[source.parent_id] = source
