from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from babellion.ai.invoker import RawOutput
from babellion.ai.providers.base import InlineImage
from babellion.core.errors import InvalidTargetError, UnsupportedStageError
from babellion.jobs.models import WorkUnit
from babellion.jobs.tasks import TaskRegistry, validate_findings
from babellion.storage.sources import ProofreadingRule, SourceDocument

SOURCE = SourceDocument(
  parent_id="doc-1",
  text="<p>Hello world</p>",
  image_base64="aW1hZ2U=",
  rules=(ProofreadingRule(title="Oxford comma", rule_text="Use a comma before the final item."), ProofreadingRule(title="Numbers", rule_text="Spell out one to nine.")),
)

FINDING = {"rule": "grammar", "original_text": "He go", "suggested_change": "He goes", "rationale": "Agreement."}


def _completed_unit(stage: str, payload: dict) -> WorkUnit:
  now = datetime(2024, 1, 1, tzinfo=UTC)
  return WorkUnit(unit_id="up-1", parent_id="doc-1", target="de", stage=stage, status="completed", model_id="test-text", created_at=now, updated_at=now, result_payload=payload)


def test_translation_prompt_names_the_language(tasks: TaskRegistry) -> None:
  prompt = tasks.resolve("translation").build_prompt(SOURCE, "de", None)
  assert prompt.user == "Translate to German. This is the text: <p>Hello world</p>"
  assert "professional translator" in prompt.system
  assert prompt.image is None


def test_proofread_prompt_carries_original_and_translation(tasks: TaskRegistry) -> None:
  upstream = _completed_unit("translation", {"text": "<p>Hallo Welt</p>"})
  prompt = tasks.resolve("proofread").build_prompt(SOURCE, "de", upstream)
  assert prompt.user == "Language: German\n\nOriginal content:\n\n<p>Hello world</p>\n\nTranslated content:\n\n<p>Hallo Welt</p>"


def test_rule_proofread_prompt_lists_rules(tasks: TaskRegistry) -> None:
  prompt = tasks.resolve("rule_proofread").build_prompt(SOURCE, "iteration-3", None)
  assert "<rules>\n- Oxford comma: Use a comma before the final item.\n- Numbers: Spell out one to nine.\n</rules>" in prompt.user
  assert "<text>\n<p>Hello world</p>\n</text>" in prompt.user


def test_image_translation_prompt_attaches_source_image(tasks: TaskRegistry) -> None:
  prompt = tasks.resolve("image_translation").build_prompt(SOURCE, "fr", None)
  assert prompt.image == InlineImage(data_base64="aW1hZ2U=", mime_type="image/png")
  assert "to French" in prompt.user


def test_image_proofread_prompt_attaches_translated_image(tasks: TaskRegistry) -> None:
  upstream = _completed_unit("image_translation", {"image_base64": "bmV3", "mime_type": "image/jpeg"})
  prompt = tasks.resolve("image_proofread").build_prompt(SOURCE, "de", upstream)
  assert prompt.image == InlineImage(data_base64="bmV3", mime_type="image/jpeg")
  assert '{"results": []}' in prompt.system


@pytest.mark.parametrize("target", ["xx", "", "  "])
def test_language_stages_reject_unknown_targets(tasks: TaskRegistry, target: str) -> None:
  with pytest.raises(InvalidTargetError):
    tasks.resolve("translation").validate_target(target)


def test_rule_proofread_accepts_any_tag(tasks: TaskRegistry) -> None:
  tasks.resolve("rule_proofread").validate_target("edit-7")


def test_image_stage_requires_an_image(tasks: TaskRegistry) -> None:
  with pytest.raises(InvalidTargetError):
    tasks.resolve("image_translation").validate_source(SourceDocument(parent_id="doc-2", text="text only"))


def test_unknown_stage_is_rejected(tasks: TaskRegistry) -> None:
  with pytest.raises(UnsupportedStageError):
    tasks.resolve("summarize")


def test_chaining_metadata(tasks: TaskRegistry) -> None:
  assert tasks.resolve("translation").derived_stage == "proofread"
  assert tasks.resolve("image_translation").derived_stage == "image_proofread"
  assert tasks.resolve("rule_proofread").derived_stage is None
  assert tasks.resolve("proofread").is_derived


def test_text_output_is_stored_verbatim(tasks: TaskRegistry) -> None:
  result = tasks.resolve("translation").interpret(RawOutput(text="<p>Hallo <b>Welt</b></p>"))
  assert result.status == "completed"
  assert result.payload == {"text": "<p>Hallo <b>Welt</b></p>"}


def test_blank_text_output_fails(tasks: TaskRegistry) -> None:
  result = tasks.resolve("proofread").interpret(RawOutput(text="  \n"))
  assert result.status == "failed"
  assert result.error is not None
  assert result.error["kind"] == "empty_output"


def test_image_output_without_image_fails(tasks: TaskRegistry) -> None:
  result = tasks.resolve("image_translation").interpret(RawOutput(text="I cannot do that"))
  assert result.status == "failed"
  assert result.error is not None
  assert result.error["kind"] == "empty_output"


def test_image_output_is_stored(tasks: TaskRegistry) -> None:
  result = tasks.resolve("image_translation").interpret(RawOutput(image=InlineImage(data_base64="bmV3")))
  assert result.payload == {"image_base64": "bmV3", "mime_type": "image/png"}


def test_findings_are_validated_and_marked_pending(tasks: TaskRegistry) -> None:
  raw = json.dumps({"results": [FINDING, {"rule": "grammar"}]})
  result = tasks.resolve("rule_proofread").interpret(RawOutput(text=raw))
  assert result.status == "completed"
  assert result.payload == {"records": [{**FINDING, "status": "pending"}], "outcome": "records"}


def test_no_changes_needed_completes_empty(tasks: TaskRegistry) -> None:
  raw = json.dumps({"results": [{"rule": "no changes needed", "original_text": "N/A", "suggested_change": "N/A", "rationale": "Clean."}]})
  result = tasks.resolve("rule_proofread").interpret(RawOutput(text=raw))
  assert result.status == "completed"
  assert result.payload == {"records": [], "outcome": "empty"}


def test_empty_results_complete_empty(tasks: TaskRegistry) -> None:
  result = tasks.resolve("image_proofread").interpret(RawOutput(text='```json\n{"results": []}\n```'))
  assert result.status == "completed"
  assert result.payload == {"records": [], "outcome": "empty"}


def test_unparsable_findings_fail_with_extraction_error(tasks: TaskRegistry) -> None:
  result = tasks.resolve("rule_proofread").interpret(RawOutput(text="Everything looks fine to me!"))
  assert result.status == "failed"
  assert result.error is not None
  assert result.error["kind"] == "extraction"


def test_only_malformed_findings_fail(tasks: TaskRegistry) -> None:
  raw = json.dumps([{"rule": "grammar", "original_text": "x"}])
  result = tasks.resolve("rule_proofread").interpret(RawOutput(text=raw))
  assert result.status == "failed"
  assert result.error is not None
  assert result.error["kind"] == "extraction"


def test_validate_findings_counts_markers_and_drops() -> None:
  findings, markers, dropped = validate_findings([FINDING, {"rule": "No Changes Needed", "original_text": "N/A", "suggested_change": "N/A"}, {"rule": ""}])
  assert [finding.rule for finding in findings] == ["grammar"]
  assert markers == 1
  assert dropped == 1
