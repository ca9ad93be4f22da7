import logging
from pathlib import PurePosixPath
from typing import Optional

from fastapi import HTTPException, UploadFile

from .constants import CHUNK_SIZE
from .errors import ApiError, truncate
from .gcs_utils import ObjectStorage
from .llm_client import LLMClient, LLMError
from .metrics import calculate_wpm, compute_delivery_metrics, count_words
from .models import ChunkRecord, RunRecord
from .storage import Store


logger = logging.getLogger("uvicorn.error")

AUDIO_MIME_BY_EXTENSION = {
    ".webm": "audio/webm",
    ".mp3": "audio/mpeg",
    ".mpeg": "audio/mpeg",
    ".mpga": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".mp4": "audio/mp4",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".oga": "audio/ogg",
    ".flac": "audio/flac",
}
EXTENSION_BY_AUDIO_MIME = {
    "audio/webm": ".webm",
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/mp4": ".m4a",
    "audio/x-m4a": ".m4a",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/ogg": ".ogg",
    "audio/flac": ".flac",
}


async def read_upload_bytes(upload: UploadFile, *, field_name: str, max_size_bytes: int) -> bytes:
    chunks = []
    total_bytes = 0
    while True:
        chunk = await upload.read(CHUNK_SIZE)
        if not chunk:
            break
        total_bytes += len(chunk)
        if total_bytes > max_size_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"{field_name.capitalize()} upload too large. Max size is {max_size_bytes} bytes.",
            )
        chunks.append(chunk)

    await upload.close()
    if total_bytes == 0:
        raise HTTPException(status_code=400, detail=f"{field_name.capitalize()} file is empty.")
    return b"".join(chunks)


def audio_extension(filename: Optional[str], content_type: Optional[str]) -> str:
    suffix = PurePosixPath(filename or "").suffix.lower()
    if suffix in AUDIO_MIME_BY_EXTENSION:
        return suffix
    base_type = (content_type or "").split(";")[0].strip().lower()
    return EXTENSION_BY_AUDIO_MIME.get(base_type, ".webm")


def audio_mime_type(path: str) -> str:
    return AUDIO_MIME_BY_EXTENSION.get(PurePosixPath(path).suffix.lower(), "audio/webm")


def _fail_run(store: Store, run_id: str, exc: Exception) -> ApiError:
    message = truncate(str(exc) or exc.__class__.__name__)
    logger.warning("run_id=%s transcription_failed error=%s", run_id, message)
    store.update_run(run_id, status="error", error_message=message)
    return ApiError(500, "Transcription failed", details=message)


def _fail_chunk(store: Store, run_id: str, chunk_id: str, exc: Exception) -> ApiError:
    message = truncate(str(exc) or exc.__class__.__name__)
    logger.warning("run_id=%s chunk_id=%s chunk_transcription_failed error=%s", run_id, chunk_id, message)
    store.update_chunk(chunk_id, status="error", error_message=message)
    return ApiError(500, "Chunk transcription failed", details=message)


def transcribe_run(store: Store, storage: ObjectStorage, llm: LLMClient, run_id: str) -> RunRecord:
    run = store.get_run(run_id)
    if run is None:
        raise ApiError(404, "Run not found")
    if not run.audio_path:
        raise ApiError(400, "Run has no audio to transcribe")
    retrying_empty = run.status == "transcribed" and not (run.transcript or "").strip()
    if run.status not in ("uploaded", "error") and not retrying_empty:
        raise ApiError(
            400,
            "Run is not ready for transcription",
            details=f"Current status: {run.status}",
        )

    try:
        audio = storage.download_bytes(run.audio_path)
        filename = PurePosixPath(run.audio_path).name
        result = llm.transcribe(audio, filename, audio_mime_type(run.audio_path))
    except (LLMError, FileNotFoundError, RuntimeError) as exc:
        raise _fail_run(store, run_id, exc) from exc
    except Exception as exc:
        logger.exception("run_id=%s transcription_unexpected_error", run_id)
        raise _fail_run(store, run_id, exc) from exc

    transcript = result.text.strip()
    if not transcript:
        raise _fail_run(store, run_id, RuntimeError("Speech API returned an empty transcript."))

    duration_seconds = run.duration_ms / 1000.0 if run.duration_ms else result.duration_seconds
    word_count = count_words(transcript)
    updated = store.update_run(
        run_id,
        transcript=transcript,
        word_count=word_count,
        words_per_minute=calculate_wpm(word_count, duration_seconds),
        audio_seconds=result.duration_seconds,
        delivery_metrics=compute_delivery_metrics(transcript, result.words),
        status="transcribed",
        error_message=None,
    )
    logger.info(
        "run_id=%s transcription_done words=%s wpm=%s",
        run_id,
        word_count,
        updated.words_per_minute,
    )
    return updated


def transcribe_chunk(
    store: Store,
    storage: ObjectStorage,
    llm: LLMClient,
    run_id: str,
    chunk_id: str,
) -> ChunkRecord:
    chunk = store.get_chunk(chunk_id)
    if chunk is None or chunk.run_id != run_id:
        raise ApiError(404, "Chunk not found")

    store.update_chunk(chunk_id, status="transcribing", error_message=None)
    try:
        audio = storage.download_bytes(chunk.audio_path)
        result = llm.transcribe(audio, PurePosixPath(chunk.audio_path).name, audio_mime_type(chunk.audio_path))
        if not result.text.strip():
            raise RuntimeError("Speech API returned an empty transcript.")
    except (LLMError, FileNotFoundError, RuntimeError) as exc:
        raise _fail_chunk(store, run_id, chunk_id, exc) from exc
    except Exception as exc:
        logger.exception("run_id=%s chunk_id=%s chunk_transcription_unexpected_error", run_id, chunk_id)
        raise _fail_chunk(store, run_id, chunk_id, exc) from exc

    store.update_chunk(chunk_id, status="transcribed", transcript=result.text.strip(), error_message=None)
    logger.info("run_id=%s chunk_id=%s chunk_transcription_done", run_id, chunk_id)
    return store.get_chunk(chunk_id)
