import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from openai import APIConnectionError, APIError, APIStatusError, APITimeoutError, OpenAI

from .errors import truncate


logger = logging.getLogger("uvicorn.error")

OCR_PROMPT = (
    "Transcribe all text in this image exactly as written. Keep the original line "
    "breaks, list numbering and table layout (use ' | ' between table cells). "
    "Return only the transcribed text."
)


class LLMError(RuntimeError):
    """Upstream LLM or speech failure; ``kind`` names the failure class."""

    def __init__(self, message: str, kind: str = "api", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


@dataclass
class TranscriptionResult:
    text: str
    duration_seconds: Optional[float] = None
    words: List[dict] = field(default_factory=list)


class LLMClient(Protocol):
    def complete_json(
        self,
        messages: List[Dict[str, Any]],
        *,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
    ) -> str:
        pass

    def extract_text_from_image(self, image_bytes: bytes, mime_type: str) -> str:
        pass

    def transcribe(self, audio_bytes: bytes, filename: str, mime_type: str) -> TranscriptionResult:
        pass


def _extract_content(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        parts = []
        for item in value:
            if isinstance(item, dict):
                text = item.get("text")
                if text:
                    parts.append(str(text))
        return "\n".join(parts).strip()
    return str(value or "").strip()


def _provider_message(exc: APIStatusError) -> str:
    return getattr(exc, "message", "") or str(exc)


def _is_temperature_unsupported(message: str) -> bool:
    lowered = message.lower()
    return "temperature" in lowered and ("default (1)" in lowered or "unsupported" in lowered)


def _is_response_format_unsupported(message: str) -> bool:
    lowered = message.lower()
    return "response_format" in lowered or "json_object" in lowered


def _get(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class OpenAILLMClient:
    def __init__(
        self,
        *,
        api_key: Optional[str],
        model: str,
        transcribe_model: str = "whisper-1",
        base_url: Optional[str] = None,
        timeout_seconds: float = 120.0,
    ) -> None:
        self.model = model
        self.transcribe_model = transcribe_model
        self._api_key = api_key
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds
        self._client: Optional[OpenAI] = None

    def _get_client(self) -> OpenAI:
        if not self._api_key:
            raise LLMError("OPENAI_API_KEY environment variable is not set.", kind="config")
        if self._client is None:
            kwargs: Dict[str, Any] = {"api_key": self._api_key, "timeout": self._timeout_seconds}
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._client = OpenAI(**kwargs)
        return self._client

    def _create_completion(self, request_kwargs: Dict[str, Any]):
        client = self._get_client()
        attempt = dict(request_kwargs)
        # Some providers reject temperature or JSON mode for certain models; drop and retry.
        for _ in range(3):
            try:
                return client.chat.completions.create(**attempt)
            except APIStatusError as exc:
                message = _provider_message(exc)
                if exc.status_code == 400 and "response_format" in attempt and _is_response_format_unsupported(message):
                    logger.warning("llm_retry model=%s dropping=response_format", self.model)
                    attempt.pop("response_format")
                    continue
                if exc.status_code == 400 and "temperature" in attempt and _is_temperature_unsupported(message):
                    logger.warning("llm_retry model=%s dropping=temperature", self.model)
                    attempt.pop("temperature")
                    continue
                raise LLMError(
                    f"LLM request failed ({exc.status_code}): {truncate(message)}",
                    kind="status",
                    status_code=exc.status_code,
                ) from exc
            except APITimeoutError as exc:
                raise LLMError("LLM request timed out.", kind="timeout") from exc
            except APIConnectionError as exc:
                raise LLMError(f"Failed to connect to the LLM provider: {exc}", kind="connection") from exc
            except APIError as exc:
                raise LLMError(f"LLM request failed: {truncate(str(exc))}", kind="api") from exc
        raise LLMError("LLM provider rejected every request variant.", kind="status")

    def complete_json(
        self,
        messages: List[Dict[str, Any]],
        *,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
    ) -> str:
        request_kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
        }
        if max_tokens is not None:
            request_kwargs["max_tokens"] = max_tokens

        response = self._create_completion(request_kwargs)
        choice = response.choices[0] if response.choices else None
        if choice is None:
            raise LLMError("LLM returned no choices.", kind="empty_response")
        content = _extract_content(choice.message.content)
        if not content:
            raise LLMError("Empty response from the LLM.", kind="empty_response")
        return content

    def extract_text_from_image(self, image_bytes: bytes, mime_type: str) -> str:
        encoded = base64.b64encode(image_bytes).decode("ascii")
        response = self._create_completion(
            {
                "model": self.model,
                "messages": [
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": OCR_PROMPT},
                            {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
                        ],
                    }
                ],
                "temperature": 0,
                "max_tokens": 2000,
            }
        )
        choice = response.choices[0] if response.choices else None
        text = _extract_content(choice.message.content) if choice else ""
        if not text:
            raise LLMError("No text could be read from the image.", kind="empty_response")
        return text

    def transcribe(self, audio_bytes: bytes, filename: str, mime_type: str) -> TranscriptionResult:
        client = self._get_client()
        try:
            response = client.audio.transcriptions.create(
                model=self.transcribe_model,
                file=(filename, audio_bytes, mime_type),
                language="en",
                response_format="verbose_json",
                timestamp_granularities=["word"],
            )
        except APIStatusError as exc:
            raise LLMError(
                f"Speech API request failed ({exc.status_code}): {truncate(_provider_message(exc))}",
                kind="status",
                status_code=exc.status_code,
            ) from exc
        except APITimeoutError as exc:
            raise LLMError("Speech API request timed out.", kind="timeout") from exc
        except APIConnectionError as exc:
            raise LLMError(f"Failed to connect to the speech API: {exc}", kind="connection") from exc
        except APIError as exc:
            raise LLMError(f"Speech API request failed: {truncate(str(exc))}", kind="api") from exc

        words = [
            {
                "word": str(_get(word, "word", "")),
                "start": float(_get(word, "start", 0.0) or 0.0),
                "end": float(_get(word, "end", 0.0) or 0.0),
            }
            for word in (_get(response, "words") or [])
        ]
        duration = _get(response, "duration")
        return TranscriptionResult(
            text=(_get(response, "text") or "").strip(),
            duration_seconds=float(duration) if duration else None,
            words=words,
        )
