import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from .document_extractor import (
    DOCUMENT_EXTENSIONS,
    IMAGE_MIME_BY_EXTENSION,
    decode_text,
    detect_extension,
    extract_document_text,
    validate_rubric_extension,
)
from .errors import ApiError, truncate
from .json_repair import parse_json_with_repair
from .llm_client import LLMClient, LLMError
from .models import ChatMessage, CopilotRequest, ParsedRubric
from .prompts.rubric_builder import (
    COPILOT_REFINEMENT_SUFFIX,
    COPILOT_SYSTEM_PROMPT,
    COPILOT_USER_PROMPT_TEMPLATE,
    CURRENT_DRAFT_TEMPLATE,
    GENERATE_SYSTEM_PROMPT,
)
from .prompts.rubric_parse import SYSTEM_PROMPT as PARSE_SYSTEM_PROMPT
from .prompts.rubric_parse import USER_PROMPT_TEMPLATE as PARSE_USER_PROMPT_TEMPLATE
from .rubric_coercion import coerce_rubric
from .rubric_parser import MIN_CRITERIA, parse_rubric_text


logger = logging.getLogger("uvicorn.error")

SOURCE_AI = "ai"
SOURCE_DETERMINISTIC = "deterministic"
SOURCE_FALLBACK = "fallback"
SOURCE_JSON = "json"
FALLBACK_WARNING = "AI parsing was unavailable, so the rubric was parsed with the basic text parser."


def parse_rubric_with_llm(llm: LLMClient, text: str) -> Tuple[ParsedRubric, str]:
    """LLM rubric extraction; any transport or JSON failure falls back to the text parser."""
    try:
        content = llm.complete_json(
            [
                {"role": "system", "content": PARSE_SYSTEM_PROMPT},
                {"role": "user", "content": PARSE_USER_PROMPT_TEMPLATE.replace("{RUBRIC_TEXT}", text)},
            ],
            temperature=0.3,
            max_tokens=2000,
        )
        payload = json.loads(content)
    except (LLMError, ValueError) as exc:
        logger.warning("rubric_parse fallback=deterministic reason=%s", truncate(str(exc), 200))
        parsed = parse_rubric_text(text)
        parsed.warnings.insert(0, FALLBACK_WARNING)
        return parsed, SOURCE_FALLBACK
    return coerce_rubric(payload), SOURCE_AI


def parse_rubric_input(llm: LLMClient, text: Optional[str], use_ai: bool = True) -> Tuple[ParsedRubric, str]:
    if not isinstance(text, str) or not text.strip():
        raise ApiError(400, 'Text is required. Provide { "text": "..." } in the request body.')
    if use_ai:
        return parse_rubric_with_llm(llm, text)
    return parse_rubric_text(text), SOURCE_DETERMINISTIC


def parse_rubric_file(
    llm: LLMClient,
    filename: str,
    data: bytes,
    use_ai: bool = True,
) -> Tuple[ParsedRubric, str]:
    extension = detect_extension(filename)
    try:
        validate_rubric_extension(extension)
    except ValueError as exc:
        raise ApiError(400, str(exc)) from exc

    if extension == ".json":
        raw_text = decode_text(data)
        try:
            payload = json.loads(raw_text)
        except ValueError:
            parsed, source = parse_rubric_input(llm, raw_text, use_ai)
            parsed.warnings.insert(0, "File was not valid JSON; it was parsed as text.")
            return parsed, source
        return coerce_rubric(payload), SOURCE_JSON

    if extension in IMAGE_MIME_BY_EXTENSION:
        try:
            text = llm.extract_text_from_image(data, IMAGE_MIME_BY_EXTENSION[extension])
        except LLMError as exc:
            raise ApiError(500, "Failed to read rubric image", details=str(exc)) from exc
    elif extension in DOCUMENT_EXTENSIONS:
        try:
            text = extract_document_text(data, extension)
        except Exception as exc:
            raise ApiError(400, "Could not read rubric document", details=truncate(str(exc))) from exc
    else:
        text = decode_text(data)

    if not text.strip():
        raise ApiError(400, "No text found in the uploaded rubric file.")
    return parse_rubric_input(llm, text, use_ai)


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def validate_rubric_draft(draft: Any) -> bool:
    if not isinstance(draft, dict) or not _is_text(draft.get("title")):
        return False
    if draft.get("description") is not None and not isinstance(draft.get("description"), str):
        return False
    target = draft.get("target_duration_seconds")
    if target is not None and (isinstance(target, bool) or not isinstance(target, (int, float))):
        return False
    criteria = draft.get("criteria")
    if not isinstance(criteria, list) or len(criteria) < MIN_CRITERIA:
        return False
    return all(
        isinstance(c, dict) and _is_text(c.get("name")) and _is_text(c.get("description")) for c in criteria
    )


def validate_copilot_rubric(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    if not _is_text(data.get("name")) or not _is_text(data.get("context_summary")):
        return False
    if not isinstance(data.get("guiding_questions"), list):
        return False
    criteria = data.get("criteria")
    if not isinstance(criteria, list) or len(criteria) < MIN_CRITERIA:
        return False
    for criterion in criteria:
        if not isinstance(criterion, dict):
            return False
        if not all(_is_text(criterion.get(key)) for key in ("name", "description", "scoring_guide")):
            return False
        weight = criterion.get("weight")
        if weight is not None and (isinstance(weight, bool) or not isinstance(weight, (int, float))):
            return False
    return True


def _complete_and_extract(llm: LLMClient, messages: List[Dict[str, Any]], failure: str) -> Any:
    try:
        content = llm.complete_json(messages, temperature=0.7, max_tokens=2000)
    except LLMError as exc:
        raise ApiError(500, failure, details=str(exc)) from exc
    try:
        return parse_json_with_repair(content)
    except ValueError as exc:
        logger.warning("rubric_builder json_extract_failed preview=%s", truncate(content, 200))
        raise ApiError(500, "Failed to parse rubric response", details=str(exc), parse_error=True) from exc


def generate_rubric_draft(
    llm: LLMClient,
    messages: List[ChatMessage],
    current_draft: Optional[Dict[str, Any]] = None,
) -> dict:
    if not messages:
        raise ApiError(400, "Messages array is required")

    conversation: List[Dict[str, Any]] = [{"role": "system", "content": GENERATE_SYSTEM_PROMPT}]
    if current_draft:
        conversation.append(
            {
                "role": "system",
                "content": CURRENT_DRAFT_TEMPLATE.replace("{DRAFT_JSON}", json.dumps(current_draft, indent=2)),
            }
        )
    conversation.extend(
        {"role": message.role, "content": message.content}
        for message in messages
        if message.role in ("user", "assistant")
    )

    draft = _complete_and_extract(llm, conversation, "Failed to generate rubric draft")
    if not validate_rubric_draft(draft):
        raise ApiError(
            500,
            "Invalid rubric draft structure",
            details="The AI returned a rubric draft that is missing required fields or has fewer than 3 criteria.",
            parse_error=False,
        )
    return draft


def run_copilot(llm: LLMClient, request: CopilotRequest) -> dict:
    context_text = (request.context_text or "").strip()
    if not context_text:
        raise ApiError(400, "context_text is required")

    refining = bool(request.user_edits) and request.current_rubric is not None
    system_prompt = COPILOT_SYSTEM_PROMPT
    if refining:
        system_prompt += COPILOT_REFINEMENT_SUFFIX.replace("{USER_EDITS}", request.user_edits or "")

    user_prompt = COPILOT_USER_PROMPT_TEMPLATE.replace("{CONTEXT_TEXT}", context_text)
    if request.target_length_seconds:
        seconds = request.target_length_seconds
        user_prompt += f"\n\nTarget duration: {seconds} seconds ({seconds // 60} minutes)"
    if request.rubric_type:
        user_prompt += f"\n\nRubric type: {request.rubric_type}"
    if refining:
        user_prompt += (
            f"\n\nCurrent rubric:\n{json.dumps(request.current_rubric, indent=2)}"
            f"\n\nUser edits: {request.user_edits}\n\nPlease refine the rubric based on these edits."
        )

    rubric = _complete_and_extract(
        llm,
        [{"role": "system", "content": system_prompt}, {"role": "user", "content": user_prompt}],
        "Failed to generate rubric",
    )
    if not validate_copilot_rubric(rubric):
        raise ApiError(
            500,
            "Invalid rubric structure",
            details="The AI returned a rubric that is missing required fields or has fewer than 3 criteria.",
        )
    return rubric
