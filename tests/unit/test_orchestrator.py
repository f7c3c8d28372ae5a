from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from babellion.ai.providers.base import ModelResponse
from babellion.core.errors import AlreadyInFlightError, InvalidTargetError, ProviderError
from babellion.jobs.dispatcher import JobDispatcher
from babellion.jobs.lifecycle import InvalidTargetPhaseError
from babellion.jobs.orchestrator import PipelineOrchestrator, TargetEvent
from babellion.storage.memory_units_repo import InMemoryWorkUnitsRepository
from babellion.storage.sources import InMemorySourceRepository, SourceDocument

if TYPE_CHECKING:
  from conftest import ModelScript


def _translation_calls(script: ModelScript, language: str) -> int:
  return sum(1 for call in script.calls if call.prompt.startswith(f"Translate to {language}."))


def _orchestrator(dispatcher: JobDispatcher, units: InMemoryWorkUnitsRepository, *, stall_timeout_seconds: float = 30, max_targets: int = 20) -> PipelineOrchestrator:
  return PipelineOrchestrator(dispatcher, units, poll_interval_seconds=0.01, stall_timeout_seconds=stall_timeout_seconds, max_targets=max_targets)


@pytest.mark.anyio
async def test_one_failing_target_does_not_affect_the_others(dispatcher: JobDispatcher, units_repo: InMemoryWorkUnitsRepository, script: ModelScript) -> None:
  script.fail("Translate to French", ProviderError("content policy", kind="fatal", status_code=400))
  orchestrator = _orchestrator(dispatcher, units_repo)

  outcomes = await orchestrator.supervisor("doc-1").run_all(["de", "fr", "es"], "test-text")

  assert outcomes["de"].status == "completed"
  assert outcomes["es"].status == "completed"
  assert outcomes["fr"].status == "failed"
  assert outcomes["fr"].primary.error == {"kind": "provider_fatal", "message": "content policy"}
  assert outcomes["fr"].derived is None
  # The failed target never reaches its derived stage.
  assert not any("Language: French" in prompt for prompt in script.prompts_containing("Original content"))
  await orchestrator.shutdown()


@pytest.mark.anyio
async def test_derived_stage_chains_onto_the_completed_primary(dispatcher: JobDispatcher, units_repo: InMemoryWorkUnitsRepository, script: ModelScript) -> None:
  orchestrator = _orchestrator(dispatcher, units_repo)

  outcomes = await orchestrator.supervisor("doc-1").run_all(["de"], "test-text")

  outcome = outcomes["de"]
  assert outcome.primary.stage == "translation"
  assert outcome.derived is not None
  assert outcome.derived.stage == "proofread"
  assert outcome.derived.status == "completed"

  derived_unit = await units_repo.get_unit(outcome.derived.unit_id or "")
  assert derived_unit is not None
  assert derived_unit.derived_from == outcome.primary.unit_id
  assert derived_unit.model_id == "test-text"
  assert [call.prompt.split(".")[0] for call in script.calls] == ["Translate to German", "Language: German\n\nOriginal content:\n\n<p>Hello world</p>\n\nTranslated content:\n\n[test-text] Translate to German"]
  await orchestrator.shutdown()


@pytest.mark.anyio
async def test_outcomes_are_yielded_as_each_target_settles(dispatcher: JobDispatcher, units_repo: InMemoryWorkUnitsRepository, script: ModelScript) -> None:
  gate = script.hold("Translate to German")
  orchestrator = _orchestrator(dispatcher, units_repo)
  seen: list[str] = []

  async for outcome in orchestrator.run("doc-1", ["de", "fr"], "test-text"):
    seen.append(outcome.target)
    if outcome.target == "fr":
      gate.release.set()

  assert seen == ["fr", "de"]
  await orchestrator.shutdown()


@pytest.mark.anyio
async def test_stalled_target_is_retried_and_the_late_result_is_discarded(dispatcher: JobDispatcher, units_repo: InMemoryWorkUnitsRepository, script: ModelScript) -> None:
  gate = script.hold("Translate to German")
  orchestrator = _orchestrator(dispatcher, units_repo, stall_timeout_seconds=0.05)
  supervisor = orchestrator.supervisor("doc-1")

  stalled = (await supervisor.run_all(["de"], "test-text"))["de"]
  assert stalled.status == "stalled"
  assert supervisor.snapshot()["de"]["phase"] == "stalled"
  stale_unit_id = stalled.primary.unit_id
  assert stale_unit_id is not None

  retried = await supervisor.retry("de")
  assert retried.status == "completed"
  assert retried.primary.unit_id != stale_unit_id

  superseded = await units_repo.get_unit(stale_unit_id)
  assert superseded is not None
  assert superseded.status == "failed"
  assert superseded.superseded_by == retried.primary.unit_id

  # The abandoned call returns after its unit was superseded.
  gate.release.set()
  await asyncio.sleep(0.05)
  superseded = await units_repo.get_unit(stale_unit_id)
  assert superseded is not None
  assert superseded.status == "failed"
  assert superseded.result_payload is None
  await orchestrator.shutdown()


@pytest.mark.anyio
async def test_cancel_stops_tracking_and_skips_the_derived_stage(dispatcher: JobDispatcher, units_repo: InMemoryWorkUnitsRepository, script: ModelScript) -> None:
  gate = script.hold("Translate to German")
  orchestrator = _orchestrator(dispatcher, units_repo)
  supervisor = orchestrator.supervisor("doc-1")

  (pipeline,) = supervisor.start(["de"], "test-text")
  await gate.entered.wait()
  assert supervisor.cancel("de") is True

  outcome = await pipeline
  assert outcome.primary.status == "cancelled"
  assert outcome.derived is None
  assert supervisor.snapshot()["de"]["phase"] == "cancelled"
  assert supervisor.cancel("de") is False

  gate.release.set()
  await orchestrator.shutdown()
  assert script.prompts_containing("Original content") == []


@pytest.mark.anyio
async def test_derived_failure_is_reported_and_retry_reruns_only_the_derived_stage(dispatcher: JobDispatcher, units_repo: InMemoryWorkUnitsRepository, script: ModelScript) -> None:
  script.fail("Original content", ProviderError("upstream unavailable", kind="transient", status_code=503), times=1)
  orchestrator = _orchestrator(dispatcher, units_repo)
  supervisor = orchestrator.supervisor("doc-1")

  outcome = (await supervisor.run_all(["de"], "test-text"))["de"]
  assert outcome.primary.status == "completed"
  assert outcome.derived is not None
  assert outcome.derived.status == "failed"
  assert outcome.derived.error is not None
  assert outcome.derived.error["kind"] == "provider_transient"
  assert supervisor.snapshot()["de"]["stage"] == "proofread"

  retried = await supervisor.retry("de")
  assert retried.derived is not None
  assert retried.derived.status == "completed"
  assert _translation_calls(script, "German") == 1

  derived_unit = await units_repo.get_unit(retried.derived.unit_id or "")
  assert derived_unit is not None
  assert derived_unit.derived_from == outcome.primary.unit_id
  await orchestrator.shutdown()


@pytest.mark.anyio
async def test_retry_rules(dispatcher: JobDispatcher, units_repo: InMemoryWorkUnitsRepository, script: ModelScript) -> None:
  gate = script.hold("Translate to German")
  orchestrator = _orchestrator(dispatcher, units_repo)
  supervisor = orchestrator.supervisor("doc-1")

  with pytest.raises(InvalidTargetError):
    supervisor.retry("de")

  (pipeline,) = supervisor.start(["de"], "test-text")
  await gate.entered.wait()
  with pytest.raises(AlreadyInFlightError):
    supervisor.retry("de")
  with pytest.raises(AlreadyInFlightError):
    supervisor.start(["de"], "test-text")

  gate.release.set()
  await pipeline

  # A completed target can be run again from its primary stage.
  again = await supervisor.retry("de")
  assert again.status == "completed"
  assert _translation_calls(script, "German") == 2
  await orchestrator.shutdown()


@pytest.mark.anyio
async def test_listeners_see_every_phase_and_failures_are_isolated(dispatcher: JobDispatcher, units_repo: InMemoryWorkUnitsRepository) -> None:
  orchestrator = _orchestrator(dispatcher, units_repo)
  supervisor = orchestrator.supervisor("doc-1")
  events: list[TargetEvent] = []

  def _broken(_event: TargetEvent) -> None:
    raise RuntimeError("listener bug")

  supervisor.subscribe(_broken)
  unsubscribe = supervisor.subscribe(events.append)

  await supervisor.run_all(["de"], "test-text")
  assert [(event.phase, event.stage) for event in events] == [
    ("queued", "translation"),
    ("running", "translation"),
    ("completed", "translation"),
    ("queued", "proofread"),
    ("running", "proofread"),
    ("completed", "proofread"),
  ]

  unsubscribe()
  await supervisor.run_all(["de"], "test-text")
  assert len(events) == 6
  await orchestrator.shutdown()


@pytest.mark.anyio
@pytest.mark.parametrize(
  ("targets", "stage"),
  [
    ([], "translation"),
    (["de", "fr", "es"], "translation"),
    (["de"], "proofread"),
  ],
)
async def test_invalid_runs_are_rejected_up_front(dispatcher: JobDispatcher, units_repo: InMemoryWorkUnitsRepository, script: ModelScript, targets: list[str], stage: str) -> None:
  orchestrator = _orchestrator(dispatcher, units_repo, max_targets=2)
  with pytest.raises(InvalidTargetError):
    orchestrator.supervisor("doc-1").start(targets, "test-text", stage)
  assert script.calls == []


@pytest.mark.anyio
async def test_duplicate_targets_run_once(dispatcher: JobDispatcher, units_repo: InMemoryWorkUnitsRepository, script: ModelScript) -> None:
  orchestrator = _orchestrator(dispatcher, units_repo, max_targets=1)
  outcomes = await orchestrator.supervisor("doc-1").run_all(["de", "de"], "test-text")
  assert list(outcomes) == ["de"]
  assert _translation_calls(script, "German") == 1
  await orchestrator.shutdown()


@pytest.mark.anyio
async def test_rejected_submission_fails_only_that_target(dispatcher: JobDispatcher, units_repo: InMemoryWorkUnitsRepository) -> None:
  orchestrator = _orchestrator(dispatcher, units_repo)
  outcomes = await orchestrator.supervisor("doc-1").run_all(["de", "xx"], "test-text")

  assert outcomes["de"].status == "completed"
  assert outcomes["xx"].status == "rejected"
  assert outcomes["xx"].primary.error is not None
  assert outcomes["xx"].primary.error["code"] == "INVALID_TARGET"
  await orchestrator.shutdown()


@pytest.mark.anyio
async def test_rule_proofread_has_no_derived_stage(dispatcher: JobDispatcher, units_repo: InMemoryWorkUnitsRepository, script: ModelScript) -> None:
  script.respond("<rules>", ModelResponse(text='{"results": []}'))
  orchestrator = _orchestrator(dispatcher, units_repo)

  outcome = (await orchestrator.supervisor("doc-1").run_all(["pass-1"], "test-text", "rule_proofread"))["pass-1"]

  assert outcome.status == "completed"
  assert outcome.derived is None
  assert outcome.primary.result_payload is not None
  assert outcome.primary.result_payload["outcome"] == "empty"
  await orchestrator.shutdown()


@pytest.mark.anyio
async def test_image_translation_chains_image_proofread(dispatcher: JobDispatcher, units_repo: InMemoryWorkUnitsRepository, script: ModelScript) -> None:
  orchestrator = _orchestrator(dispatcher, units_repo)
  supervisor = orchestrator.supervisor("doc-1")

  outcome = (await supervisor.run_all(["fr"], "test-image", "image_translation"))["fr"]

  assert outcome.primary.result_payload is not None
  assert outcome.primary.result_payload["image_base64"] == "dHJhbnNsYXRlZA=="
  assert outcome.derived is not None
  assert outcome.derived.stage == "image_proofread"
  assert outcome.derived.result_payload == {"records": [], "outcome": "empty"}
  assert script.calls[-1].image is not None
  assert script.calls[-1].image.data_base64 == "dHJhbnNsYXRlZA=="

  runtimes = supervisor.snapshot()["fr"]["runtimes"]
  assert set(runtimes) == {"image_translation", "image_proofread"}
  await orchestrator.shutdown()


@pytest.mark.anyio
async def test_supervisor_is_reused_per_parent(dispatcher: JobDispatcher, units_repo: InMemoryWorkUnitsRepository) -> None:
  orchestrator = _orchestrator(dispatcher, units_repo)
  assert orchestrator.find_supervisor("doc-1") is None
  supervisor = orchestrator.supervisor("doc-1")
  assert orchestrator.supervisor("doc-1") is supervisor
  assert orchestrator.find_supervisor("doc-1") is supervisor


@pytest.mark.anyio
async def test_target_left_running_cannot_be_retried(dispatcher: JobDispatcher, units_repo: InMemoryWorkUnitsRepository, script: ModelScript) -> None:
  gate = script.hold("Translate to German")
  orchestrator = _orchestrator(dispatcher, units_repo)
  supervisor = orchestrator.supervisor("doc-1")

  (pipeline,) = supervisor.start(["de"], "test-text")
  await gate.entered.wait()
  pipeline.cancel()
  with pytest.raises(asyncio.CancelledError):
    await pipeline

  # The cancelled pipeline left the target running.
  with pytest.raises(InvalidTargetPhaseError):
    supervisor.retry("de")
  gate.release.set()
  await orchestrator.shutdown()


@pytest.mark.anyio
async def test_idle_supervisors_are_dropped_after_the_ttl(dispatcher: JobDispatcher, units_repo: InMemoryWorkUnitsRepository, sources: InMemorySourceRepository, script: ModelScript) -> None:
  await sources.put_source(SourceDocument(parent_id="doc-2", text="<p>Second</p>"))
  now = [100.0]
  orchestrator = PipelineOrchestrator(dispatcher, units_repo, poll_interval_seconds=0.01, stall_timeout_seconds=30, idle_ttl_seconds=60, monotonic=lambda: now[0])
  settled = orchestrator.supervisor("doc-1")
  await settled.run_all(["de"], "test-text")
  while settled.poller.running:
    await asyncio.sleep(0.01)

  gate = script.hold("Translate to French")
  busy = orchestrator.supervisor("doc-2")
  busy.start(["fr"], "test-text")
  await gate.entered.wait()

  now[0] += 59
  assert orchestrator.find_supervisor("doc-1") is settled

  now[0] += 1
  assert orchestrator.find_supervisor("doc-1") is None
  assert orchestrator.find_supervisor("doc-2") is busy
  assert orchestrator.supervisor("doc-1") is not settled

  gate.release.set()
  await orchestrator.shutdown()
