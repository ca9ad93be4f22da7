import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ApiError, truncate
from .llm_client import LLMClient, LLMError
from .models import PromptRubricItem, RunRecord, utc_now
from .plans import resolve_plan
from .prompts.analysis import (
    ANALYSIS_VERSION,
    GUIDING_QUESTIONS_SECTION,
    PITCH_CONTEXT_SECTION,
    QUESTION_GRADING_SCHEMA,
    SYSTEM_PROMPT,
    USER_PROMPT_TEMPLATE,
)
from .rubric_resolution import ResolvedCriterion, resolve_rubric
from .storage import Store


logger = logging.getLogger("uvicorn.error")

REQUIRED_ANALYSIS_KEYS = ("summary", "rubric_scores", "line_by_line")
_PLACEHOLDER = re.compile(r"\{([A-Z_]+)\}")


@dataclass
class AnalysisPromptInput:
    transcript: str
    criteria: List[ResolvedCriterion]
    prompt_rubric: Optional[List[PromptRubricItem]] = None
    pitch_context: Optional[str] = None
    guiding_questions: List[str] = field(default_factory=list)
    target_seconds: Optional[int] = None
    max_seconds: Optional[int] = None
    actual_seconds: Optional[float] = None
    wpm: Optional[int] = None


def render_prompt(template: str, values: Dict[str, str]) -> str:
    """Single-pass ``{NAME}`` substitution; inserted text is never rescanned."""
    return _PLACEHOLDER.sub(lambda match: values.get(match.group(1), match.group(0)), template)


def _format_weight(weight: float) -> str:
    return str(int(weight)) if float(weight).is_integer() else str(weight)


def _rubric_items(data: AnalysisPromptInput) -> List[PromptRubricItem]:
    if data.prompt_rubric:
        return list(data.prompt_rubric)
    return [
        PromptRubricItem(id=criterion.id or f"criterion_{index}", label=criterion.name, weight=criterion.weight)
        for index, criterion in enumerate(data.criteria)
    ]


def _timing_info(data: AnalysisPromptInput) -> str:
    lines = [
        f"Target duration: {data.target_seconds}s ({data.target_seconds // 60} min)"
        if data.target_seconds
        else "No target duration specified",
    ]
    if data.max_seconds:
        lines.append(f"Max duration: {data.max_seconds}s ({data.max_seconds // 60} min)")
    lines.append(f"Actual duration: {data.actual_seconds:.1f}s" if data.actual_seconds else "Duration unknown")
    if data.wpm:
        lines.append(f"Speaking pace: {data.wpm} WPM")
    return "\n".join(lines)


def build_analysis_prompt(data: AnalysisPromptInput) -> str:
    items = _rubric_items(data)
    criteria_lines = []
    for index, item in enumerate(items, start=1):
        weight_note = f" (weight: {_format_weight(item.weight)})" if item.weight != 1.0 else ""
        optional_note = " (optional)" if item.optional else ""
        description = ""
        if not data.prompt_rubric and index - 1 < len(data.criteria) and data.criteria[index - 1].description:
            description = f" - {data.criteria[index - 1].description}"
        criteria_lines.append(f"{index}. {item.label}{weight_note}{optional_note}{description}")

    weights = [{"id": item.id, "label": item.label, "weight": item.weight} for item in items]
    context = (data.pitch_context or "").strip()
    questions = [q for q in data.guiding_questions if q.strip()]

    return render_prompt(
        USER_PROMPT_TEMPLATE,
        {
            "TRANSCRIPT": data.transcript,
            "PITCH_CONTEXT_SECTION": (
                render_prompt(PITCH_CONTEXT_SECTION, {"PITCH_CONTEXT": context}) if context else ""
            ),
            "GUIDING_QUESTIONS_SECTION": (
                render_prompt(
                    GUIDING_QUESTIONS_SECTION,
                    {"QUESTION_LIST": "\n".join(f"{i}. {q}" for i, q in enumerate(questions, start=1))},
                )
                if questions
                else ""
            ),
            "CRITERIA_LIST": "\n".join(criteria_lines),
            "RUBRIC_WEIGHTS": json.dumps(weights, indent=2),
            "TIMING_INFO": _timing_info(data),
            "TARGET_SECONDS": str(data.target_seconds) if data.target_seconds else "null",
            "MAX_SECONDS": str(data.max_seconds) if data.max_seconds else "null",
            "ESTIMATED_SECONDS": f"{data.actual_seconds:.1f}" if data.actual_seconds else "null",
            "PACING_WPM": str(data.wpm) if data.wpm else "null",
            "QUESTION_GRADING_SCHEMA": QUESTION_GRADING_SCHEMA if questions else "",
        },
    )


def validate_analysis(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError("Analysis JSON root must be an object.")
    missing = [key for key in REQUIRED_ANALYSIS_KEYS if not payload.get(key)]
    if missing:
        raise ValueError(f"Invalid analysis structure: missing {', '.join(missing)}.")
    if not isinstance(payload["summary"], dict):
        raise ValueError("Invalid analysis structure: summary must be an object.")
    return payload


def _audio_seconds(run: RunRecord) -> Optional[float]:
    if run.duration_ms:
        return run.duration_ms / 1000.0
    return run.audio_seconds


def analyze_run(
    store: Store,
    llm: LLMClient,
    run_id: str,
    *,
    rubric_id: Optional[str] = None,
    prompt_rubric: Optional[List[PromptRubricItem]] = None,
    pitch_context: Optional[str] = None,
    caller_id: Optional[str] = None,
) -> RunRecord:
    run = store.get_run(run_id)
    if run is None:
        raise ApiError(404, "Run not found", details="Run with this ID does not exist", runId=run_id)

    transcript = (run.transcript or "").strip()
    if not transcript:
        raise ApiError(
            400,
            "Transcript is required for analysis",
            details=f"Transcript is missing or empty. Status: {run.status}",
            runId=run_id,
            runStatus=run.status,
        )
    if run.status != "transcribed":
        logger.warning("run_id=%s analysis_start status=%s transcript_present=true", run_id, run.status)

    resolved = resolve_rubric(store, run, rubric_id)
    if resolved is None:
        raise ApiError(
            400,
            "Rubric not found",
            details=f"No valid rubric found. Rubric ID: {rubric_id or run.rubric_id or 'null'}",
            runId=run_id,
        )

    prompt = build_analysis_prompt(
        AnalysisPromptInput(
            transcript=transcript,
            criteria=resolved.criteria,
            prompt_rubric=prompt_rubric,
            pitch_context=pitch_context or run.pitch_context,
            guiding_questions=resolved.guiding_questions,
            target_seconds=resolved.target_duration_seconds,
            max_seconds=resolved.max_duration_seconds,
            actual_seconds=_audio_seconds(run),
            wpm=run.words_per_minute,
        )
    )

    store.update_run(run_id, status="analyzing", error_message=None)
    try:
        content = llm.complete_json(
            [{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": prompt}],
            temperature=0.7,
        )
        analysis = validate_analysis(json.loads(content))
    except (LLMError, ValueError) as exc:
        message = truncate(str(exc) or "Analysis failed")
        logger.warning("run_id=%s analysis_failed error=%s", run_id, message)
        store.update_run(run_id, status="error", error_message=message)
        raise ApiError(500, "Analysis failed", details=message) from exc
    except Exception as exc:
        logger.exception("run_id=%s analysis_unexpected_error", run_id)
        message = truncate(str(exc) or exc.__class__.__name__)
        store.update_run(run_id, status="error", error_message=message)
        raise ApiError(500, "Analysis failed", details=message) from exc

    if resolved.guiding_questions and not analysis.get("question_grading"):
        logger.warning("run_id=%s analysis question_grading_missing", run_id)

    plan = resolve_plan(store, caller_id or run.user_id, run.session_id)
    analysis["meta"] = {
        "plan_at_time": plan.value,
        "generated_at": utc_now().isoformat(),
        "prompt_version": ANALYSIS_VERSION,
        "rubric_source": resolved.source.name.lower(),
    }
    updated = store.update_run(
        run_id,
        analysis_json=analysis,
        plan_at_time=plan.value,
        status="analyzed",
        error_message=None,
    )
    summary = analysis.get("summary") or {}
    logger.info(
        "run_id=%s analysis_done score=%s plan=%s",
        run_id,
        summary.get("overall_score") if isinstance(summary, dict) else None,
        plan.value,
    )
    return updated
