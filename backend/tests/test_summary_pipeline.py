from __future__ import annotations

import asyncio
import threading

import pytest

from fake_models import FakeSummaryModel
from intake_ai import ChunkEvent, CompletedEvent, merge_red_flags, parse_ai_red_flags
from intake_core import GenerationFailed, NotFound, RedFlag
from intake_helpers import SAMPLE_RESPONSES, submitted_intake


@pytest.fixture
def fake_model(container):
    model = FakeSummaryModel()
    container.summary_pipeline.model = model
    return model


def test_generate_merges_keyword_and_ai_flags(client, auth_headers, container, fake_model):
    intake_id = submitted_intake(client, auth_headers("dr-a"))
    summary = asyncio.run(container.summary_pipeline.generate(intake_id))

    keyword = container.intakes.red_flags_for(intake_id)
    assert set(keyword) <= set(summary.red_flags)
    ai_flags = [flag for flag in summary.red_flags if flag.source == "ai"]
    assert [(flag.flag, flag.severity) for flag in ai_flags] == [
        ("Chest pain with dyspnea requires urgent cardiac evaluation", "high"),
        ("Anticoagulation with warfarin, review bleeding risk", "medium"),
    ]
    assert summary.has_red_flags is True
    assert summary.red_flag_count == len(keyword) + 2
    assert [flag.severity for flag in summary.red_flags] == sorted(
        (flag.severity for flag in summary.red_flags), key=["high", "medium", "low"].index
    )
    assert summary.model == "fake-model-1"
    assert summary.tokens_used == 321
    assert summary.content == fake_model.text.strip()


def test_generate_builds_structured_fields_from_responses(client, auth_headers, container, fake_model):
    intake_id = submitted_intake(client, auth_headers("dr-a"))
    summary = asyncio.run(container.summary_pipeline.generate(intake_id))

    assert summary.chief_complaint == SAMPLE_RESPONSES["chiefComplaint"]
    assert [med.name for med in summary.medications] == ["Warfarin", "Metformin"]
    assert summary.medications[0].dosage == "5mg"
    assert summary.medications[0].purpose == "AFib"
    assert summary.medications[0].is_verified is False
    assert summary.systems_review["cardiovascular"] == "chest tightness"
    assert summary.systems_review["integumentary"] == "no rashes"
    assert summary.systems_review["neurological"] is None
    assert summary.lifestyle["smoking"] == "former, quit 2015"
    assert summary.lifestyle["sleep"] is None
    assert "Hypertension" in summary.relevant_history
    assert "Appendectomy" in summary.relevant_history


def test_prompt_carries_instructions_but_not_identifiers(client, auth_headers, container, fake_model):
    intake_id = submitted_intake(client, auth_headers("dr-a"))
    asyncio.run(container.summary_pipeline.generate(intake_id))
    prompt = fake_model.prompts[0]
    assert "[RED FLAG]" in prompt
    assert "Never make or suggest a diagnosis" in prompt
    for section in ("Summary", "Key Findings", "Red Flags", "Medications Review", "Considerations"):
        assert f"**{section}**" in prompt
    assert "Warfarin (5mg) - daily" in prompt
    assert "Penicillin -> hives" in prompt
    assert "555-0100" not in prompt


def test_generate_is_idempotent_per_intake(client, auth_headers, container, fake_model):
    intake_id = submitted_intake(client, auth_headers("dr-a"))
    first = asyncio.run(container.summary_pipeline.generate(intake_id))
    second = asyncio.run(container.summary_pipeline.generate(intake_id))
    assert first.id == second.id
    assert fake_model.complete_calls == 1
    assert container.summaries.count_for_intake(intake_id) == 1


def test_generate_retries_then_succeeds(client, auth_headers, container, fake_model):
    fake_model.fail_times = 1
    container.summary_pipeline.retries = 1
    intake_id = submitted_intake(client, auth_headers("dr-a"))
    summary = asyncio.run(container.summary_pipeline.generate(intake_id))
    assert summary.intake_id == intake_id
    assert fake_model.complete_calls == 2


def test_generation_failure_keeps_intake_and_keyword_flags(client, auth_headers, container, fake_model):
    fake_model.fail_times = 5
    container.summary_pipeline.retries = 1
    intake_id = submitted_intake(client, auth_headers("dr-a"))
    keyword_before = container.intakes.red_flags_for(intake_id)

    with pytest.raises(GenerationFailed):
        asyncio.run(container.summary_pipeline.generate(intake_id))

    assert container.intakes.get(intake_id) is not None
    assert container.intakes.red_flags_for(intake_id) == keyword_before
    assert container.summaries.count_for_intake(intake_id) == 0
    actions = [event["action"] for event in container.audit.events_for("intake", intake_id)]
    assert "GENERATION_FAILED" in actions

    fake_model.fail_times = 0
    summary = asyncio.run(container.summary_pipeline.generate(intake_id))
    assert summary.intake_id == intake_id


def test_generation_times_out(client, auth_headers, container):
    container.summary_pipeline.model = FakeSummaryModel(delay_seconds=0.5)
    container.summary_pipeline.timeout_seconds = 0.05
    container.summary_pipeline.retries = 0
    intake_id = submitted_intake(client, auth_headers("dr-a"))
    with pytest.raises(GenerationFailed):
        asyncio.run(container.summary_pipeline.generate(intake_id))
    assert container.summaries.count_for_intake(intake_id) == 0


def test_generate_without_model_fails(client, auth_headers, container):
    container.summary_pipeline.model = None
    intake_id = submitted_intake(client, auth_headers("dr-a"))
    with pytest.raises(GenerationFailed):
        asyncio.run(container.summary_pipeline.generate(intake_id))


def test_generate_for_other_provider_is_not_found(client, auth_headers, container, fake_model):
    intake_id = submitted_intake(client, auth_headers("dr-a"))
    with pytest.raises(NotFound):
        asyncio.run(container.summary_pipeline.generate(intake_id, provider_id="dr-b"))


def test_streaming_persists_after_upstream_is_exhausted(client, auth_headers, container, fake_model):
    intake_id = submitted_intake(client, auth_headers("dr-a"))

    async def run():
        events = []
        async for event in container.summary_pipeline.generate_streaming(intake_id):
            if isinstance(event, ChunkEvent):
                assert container.summaries.count_for_intake(intake_id) == 0
            events.append(event)
        return events

    events = asyncio.run(run())
    chunks = [event.text for event in events if isinstance(event, ChunkEvent)]
    assert chunks == fake_model.chunks
    assert isinstance(events[-1], CompletedEvent)
    assert events[-1].summary.content == fake_model.text.strip()
    assert container.summaries.count_for_intake(intake_id) == 1
    assert fake_model.streams_closed == 1


def test_closing_stream_early_persists_nothing(client, auth_headers, container, fake_model):
    intake_id = submitted_intake(client, auth_headers("dr-a"))

    async def run():
        stream = container.summary_pipeline.generate_streaming(intake_id)
        received = [await stream.__anext__(), await stream.__anext__()]
        await stream.aclose()
        return received

    received = asyncio.run(run())
    assert len(received) == 2
    assert len(fake_model.chunks) == 7
    assert fake_model.chunks_sent == 2
    assert fake_model.streams_closed == 1
    assert container.summaries.count_for_intake(intake_id) == 0


def test_upstream_failure_mid_stream_raises_and_persists_nothing(client, auth_headers, container):
    container.summary_pipeline.model = FakeSummaryModel(stream_fail_after=3)
    intake_id = submitted_intake(client, auth_headers("dr-a"))

    async def run():
        seen = 0
        async for _event in container.summary_pipeline.generate_streaming(intake_id):
            seen += 1
        return seen

    with pytest.raises(GenerationFailed):
        asyncio.run(run())
    assert container.summaries.count_for_intake(intake_id) == 0


def test_background_generation_swallows_failure_after_audit(client, auth_headers, container, fake_model):
    fake_model.fail_times = 10
    intake_id = submitted_intake(client, auth_headers("dr-a"))
    asyncio.run(container.summary_pipeline.generate_in_background(intake_id))
    assert container.summaries.count_for_intake(intake_id) == 0
    actions = [event["action"] for event in container.audit.events_for("intake", intake_id)]
    assert "GENERATION_FAILED" in actions


def test_ai_flags_never_remove_keyword_flags():
    keyword = [
        RedFlag(flag='Patient reported: "chest pain"', severity="high", source="keyword"),
        RedFlag(flag="Multiple allergies reported (4)", severity="low", source="keyword"),
    ]
    ai = parse_ai_red_flags(
        "## Red Flags\n"
        '[RED FLAG] Patient reported: "chest pain"\n'
        "- **[RED FLAG]** Possible sepsis, needs immediate review\n"
        "No immediate red flags identified\n"
    )
    assert [(flag.flag, flag.severity, flag.source) for flag in ai] == [
        ('Patient reported: "chest pain"', "medium", "ai"),
        ("Possible sepsis, needs immediate review", "high", "ai"),
    ]
    merged = merge_red_flags(keyword, ai)
    for flag in keyword:
        assert flag in merged
    assert len(merged) == 4


def test_ai_flag_identical_to_keyword_flag_is_not_duplicated():
    keyword = [RedFlag(flag="Chest pain", severity="high", source="keyword")]
    ai = parse_ai_red_flags("[RED FLAG] Chest pain is an emergency")
    ai_same = [RedFlag(flag="Chest pain", severity="high", source="ai")]
    assert len(merge_red_flags(keyword, ai)) == 2
    merged = merge_red_flags(keyword, ai_same)
    assert merged == keyword


def test_store_access_runs_off_the_event_loop_thread(client, auth_headers, container, fake_model, monkeypatch):
    intake_id = submitted_intake(client, auth_headers("dr-a"))
    store_threads = []
    original_insert = container.summaries.insert
    original_get_by_intake = container.summaries.get_by_intake

    def recording_insert(summary):
        store_threads.append(threading.get_ident())
        return original_insert(summary)

    def recording_get_by_intake(intake_id):
        store_threads.append(threading.get_ident())
        return original_get_by_intake(intake_id)

    monkeypatch.setattr(container.summaries, "insert", recording_insert)
    monkeypatch.setattr(container.summaries, "get_by_intake", recording_get_by_intake)

    async def run():
        loop_thread = threading.get_ident()
        await container.summary_pipeline.generate(intake_id)
        return loop_thread

    loop_thread = asyncio.run(run())
    assert len(store_threads) == 2
    assert loop_thread not in store_threads
