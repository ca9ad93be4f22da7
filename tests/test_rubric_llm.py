import pytest

from pitchpractice.backend.errors import ApiError
from pitchpractice.backend.llm_client import LLMError
from pitchpractice.backend.models import ChatMessage, CopilotRequest
from pitchpractice.backend.rubric_llm import (
    FALLBACK_WARNING,
    SOURCE_AI,
    SOURCE_DETERMINISTIC,
    SOURCE_FALLBACK,
    SOURCE_JSON,
    generate_rubric_draft,
    parse_rubric_file,
    parse_rubric_input,
    run_copilot,
)


def _draft(count=3):
    return {
        "title": "Investor Pitch",
        "description": "Seed round",
        "target_duration_seconds": 180,
        "criteria": [{"name": f"C{i}", "description": f"d{i}"} for i in range(count)],
    }


def test_ai_parse_is_coerced(llm):
    llm.queue({"rubric_name": "AI Rubric", "criteria": [{"label": "A"}, {"label": "B"}, {"label": "C"}]})

    parsed, source = parse_rubric_input(llm, "anything", use_ai=True)

    assert source == SOURCE_AI
    assert parsed.rubric.name == "AI Rubric"
    assert [c.name for c in parsed.rubric.criteria] == ["A", "B", "C"]


def test_llm_failure_falls_back_to_text_parser(llm):
    llm.queue(LLMError("timed out", kind="timeout"))

    parsed, source = parse_rubric_input(llm, "Criteria: A - d1; B - d2; C - d3", use_ai=True)

    assert source == SOURCE_FALLBACK
    assert [c.name for c in parsed.rubric.criteria] == ["A", "B", "C"]
    assert parsed.warnings[0] == FALLBACK_WARNING


def test_malformed_llm_json_falls_back(llm):
    llm.queue("this is not json")

    parsed, source = parse_rubric_input(llm, "1. A - a\n2. B - b\n3. C - c", use_ai=True)

    assert source == SOURCE_FALLBACK
    assert len(parsed.rubric.criteria) == 3


def test_deterministic_mode_skips_llm(llm):
    parsed, source = parse_rubric_input(llm, "Criteria: A; B; C", use_ai=False)

    assert source == SOURCE_DETERMINISTIC
    assert llm.calls == []


def test_empty_text_is_rejected(llm):
    with pytest.raises(ApiError) as excinfo:
        parse_rubric_input(llm, "   ")
    assert excinfo.value.status_code == 400


def test_json_file_is_coerced_without_llm(llm):
    data = b'{"name": "From File", "criteria": ["A", "B"]}'

    parsed, source = parse_rubric_file(llm, "rubric.json", data)

    assert source == SOURCE_JSON
    assert [c.name for c in parsed.rubric.criteria] == ["A", "B"]
    assert any("fewer than 3 criteria" in w for w in parsed.warnings)
    assert llm.calls == []


def test_invalid_json_file_is_parsed_as_text(llm):
    parsed, source = parse_rubric_file(llm, "rubric.json", b"Criteria: A; B; C", use_ai=False)

    assert source == SOURCE_DETERMINISTIC
    assert parsed.warnings[0].startswith("File was not valid JSON")


def test_image_file_uses_ocr_text(llm):
    parsed, source = parse_rubric_file(llm, "photo.PNG", b"\x89PNG...", use_ai=False)

    assert [c.name for c in parsed.rubric.criteria] == ["Clarity", "Structure", "Delivery"]


def test_image_ocr_failure_is_500(llm):
    llm.image_text = LLMError("vision down")

    with pytest.raises(ApiError) as excinfo:
        parse_rubric_file(llm, "photo.jpg", b"data")
    assert excinfo.value.status_code == 500


def test_unsupported_extension_is_400(llm):
    with pytest.raises(ApiError) as excinfo:
        parse_rubric_file(llm, "slides.ppt", b"data")
    assert excinfo.value.status_code == 400


def test_generate_draft_accepts_fenced_json(llm):
    llm.queue("Here you go:\n```json\n" + '{"title": "T", "criteria": [' + ",".join(
        f'{{"name": "C{i}", "description": "d{i}"}}' for i in range(3)
    ) + "]}\n```")

    draft = generate_rubric_draft(llm, [ChatMessage(role="user", content="Build me a rubric")])

    assert draft["title"] == "T"
    assert llm.calls[0]["messages"][-1] == {"role": "user", "content": "Build me a rubric"}


def test_generate_draft_with_two_criteria_is_500(llm):
    llm.queue(_draft(count=2))

    with pytest.raises(ApiError) as excinfo:
        generate_rubric_draft(llm, [ChatMessage(role="user", content="hi")])
    assert excinfo.value.status_code == 500
    assert excinfo.value.error == "Invalid rubric draft structure"


def test_generate_draft_requires_messages(llm):
    with pytest.raises(ApiError) as excinfo:
        generate_rubric_draft(llm, [])
    assert excinfo.value.status_code == 400


def test_generate_draft_includes_current_draft(llm):
    llm.queue(_draft())

    generate_rubric_draft(llm, [ChatMessage(role="user", content="tweak")], current_draft={"title": "Old"})

    system_messages = [m for m in llm.calls[0]["messages"] if m["role"] == "system"]
    assert len(system_messages) == 2
    assert '"title": "Old"' in system_messages[1]["content"]


def test_unparseable_builder_output_reports_parse_error(llm):
    llm.queue("no json at all")

    with pytest.raises(ApiError) as excinfo:
        generate_rubric_draft(llm, [ChatMessage(role="user", content="hi")])
    assert excinfo.value.error == "Failed to parse rubric response"
    assert excinfo.value.extra["parse_error"] is True


def test_copilot_refinement_prompt(llm):
    llm.queue(
        {
            "name": "Accelerator",
            "context_summary": "Demo day",
            "guiding_questions": ["Why you?"],
            "criteria": [
                {"name": f"C{i}", "description": "d", "scoring_guide": "1-10", "weight": 1}
                for i in range(3)
            ],
        }
    )

    rubric = run_copilot(
        llm,
        CopilotRequest(
            context_text="YC application",
            target_length_seconds=120,
            user_edits="Add a market criterion",
            current_rubric={"name": "Old"},
        ),
    )

    assert rubric["name"] == "Accelerator"
    system_prompt = llm.calls[0]["messages"][0]["content"]
    user_prompt = llm.calls[0]["messages"][1]["content"]
    assert "Add a market criterion" in system_prompt
    assert "Target duration: 120 seconds (2 minutes)" in user_prompt
    assert "Current rubric" in user_prompt


def test_copilot_requires_context(llm):
    with pytest.raises(ApiError) as excinfo:
        run_copilot(llm, CopilotRequest(context_text="  "))
    assert excinfo.value.status_code == 400
