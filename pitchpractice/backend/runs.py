import json
import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder

from .auth import AuthUser
from .constants import AUDIO_URL_TTL_SECONDS, MIN_AUDIO_BYTES, RUN_AUDIO_URL_TTL_SECONDS, UPLOAD_URL_TTL_MINUTES
from .errors import ApiError, truncate
from .gcs_utils import ObjectStorage
from .models import ChunkRecord, RunRecord, UploadCompleteRequest, UploadSignRequest, utc_now
from .rubric_coercion import coerce_rubric, rubric_to_json
from .storage import Store, new_id
from .transcription import EXTENSION_BY_AUDIO_MIME, audio_extension


logger = logging.getLogger("uvicorn.error")

PROGRESS_RUN_LIMIT = 3
RUN_LIST_LIMIT = 50


def record_to_dict(record: Any) -> Dict[str, Any]:
    return jsonable_encoder(asdict(record))


def check_run_access(run: RunRecord, user: Optional[AuthUser]) -> None:
    """Anonymous runs are open to anyone holding the ID; owned runs only to their owner."""
    if run.user_id and (user is None or user.id != run.user_id):
        raise ApiError(403, "Unauthorized")


def load_run(store: Store, run_id: str, user: Optional[AuthUser] = None) -> RunRecord:
    run = store.get_run(run_id)
    if run is None:
        raise ApiError(404, "Run not found")
    check_run_access(run, user)
    return run


def _parse_duration_ms(raw: Optional[str]) -> Optional[int]:
    if raw is None or not str(raw).strip():
        return None
    try:
        value = int(float(raw))
    except (ValueError, OverflowError) as exc:
        raise ApiError(400, "duration_ms must be a number") from exc
    return value if value > 0 else None


def _snapshot_from(raw: Optional[str]) -> Optional[dict]:
    if raw is None or not raw.strip():
        return None
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise ApiError(400, "rubric_json must be valid JSON", details=str(exc)) from exc
    parsed = coerce_rubric(payload)
    for warning in parsed.warnings:
        logger.info("run_create rubric_snapshot_warning=%s", warning)
    return rubric_to_json(parsed.rubric)


def _classify_upload_error(exc: Exception) -> str:
    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    if "not found" in lowered or "bucket" in lowered:
        return f"Storage bucket is not available: {truncate(message, 300)}"
    if "permission" in lowered or "forbidden" in lowered or "403" in lowered:
        return f"Storage permission denied: {truncate(message, 300)}"
    if "credential" in lowered:
        return f"Storage credentials are not configured: {truncate(message, 300)}"
    return truncate(message)


def create_run(
    store: Store,
    storage: ObjectStorage,
    *,
    audio: bytes,
    filename: Optional[str],
    content_type: Optional[str],
    session_id: str,
    user: Optional[AuthUser] = None,
    rubric_id: Optional[str] = None,
    rubric_json: Optional[str] = None,
    title: Optional[str] = None,
    duration_ms: Optional[str] = None,
    pitch_context: Optional[str] = None,
) -> RunRecord:
    session_id = (session_id or "").strip()
    if not session_id:
        raise ApiError(400, "Session ID is required", details="session_id is missing from request")

    snapshot = _snapshot_from(rubric_json)
    rubric_id = (rubric_id or "").strip() or None
    if rubric_id is None and snapshot is None:
        default = store.get_default_template()
        if default is None:
            raise ApiError(400, "No rubric available", details="No rubric templates found in database")
        rubric_id = default.id

    run_id = new_id()
    extension = audio_extension(filename, content_type)
    audio_path = f"{session_id}/{run_id}{extension}"
    parsed_duration = _parse_duration_ms(duration_ms)
    run = store.insert_run(
        RunRecord(
            id=run_id,
            session_id=session_id,
            created_at=utc_now(),
            status="uploading",
            user_id=user.id if user else None,
            title=(title or "").strip() or None,
            audio_path=audio_path,
            audio_seconds=parsed_duration / 1000.0 if parsed_duration else None,
            duration_ms=parsed_duration,
            rubric_id=rubric_id,
            rubric_snapshot_json=snapshot,
            pitch_context=(pitch_context or "").strip() or None,
        )
    )

    if len(audio) < MIN_AUDIO_BYTES:
        store.delete_run(run_id)
        raise ApiError(
            400,
            "Recording was empty or silent.",
            details=f"File size ({len(audio) / 1024:.2f} KB) is too small. Minimum size is 8 KB.",
        )

    mime_type = (content_type or "").split(";")[0].strip().lower()
    if mime_type not in EXTENSION_BY_AUDIO_MIME:
        mime_type = "audio/webm"
    try:
        storage.upload_bytes(audio_path, audio, mime_type)
    except Exception as exc:
        store.delete_run(run_id)
        message = _classify_upload_error(exc)
        logger.warning("run_id=%s audio_upload_failed error=%s", run_id, message)
        raise ApiError(500, "Failed to upload audio", details=message) from exc

    run = store.update_run(run_id, status="uploaded")
    logger.info("run_id=%s run_created bytes=%s rubric_id=%s snapshot=%s", run_id, len(audio), rubric_id, snapshot is not None)
    return run


def signed_audio_url(storage: ObjectStorage, run: RunRecord, ttl_seconds: int = RUN_AUDIO_URL_TTL_SECONDS) -> Optional[str]:
    if not run.audio_path:
        return None
    try:
        return storage.signed_download_url(run.audio_path, ttl_seconds)
    except Exception:
        logger.warning("run_id=%s signed_url_failed path=%s", run.id, run.audio_path, exc_info=True)
        return None


def run_detail(store: Store, storage: ObjectStorage, run_id: str) -> Dict[str, Any]:
    run = store.get_run(run_id)
    if run is None:
        raise ApiError(404, "Run not found")
    payload = record_to_dict(run)
    payload["audio_url"] = signed_audio_url(storage, run)
    rubric = store.get_rubric(run.rubric_id) if run.rubric_id else None
    payload["rubric"] = record_to_dict(rubric) if rubric else None
    return payload


def audio_url(store: Store, storage: ObjectStorage, run_id: str, user: Optional[AuthUser]) -> Dict[str, Any]:
    run = load_run(store, run_id, user)
    if not run.audio_path:
        raise ApiError(404, "Run has no audio")
    url = signed_audio_url(storage, run, AUDIO_URL_TTL_SECONDS)
    if url is None:
        raise ApiError(500, "Failed to generate audio URL")
    return {"ok": True, "url": url, "expires_in": AUDIO_URL_TTL_SECONDS}


def reset_run(store: Store, run_id: str, user: Optional[AuthUser]) -> RunRecord:
    load_run(store, run_id, user)
    logger.info("run_id=%s run_reset", run_id)
    return store.update_run(
        run_id,
        transcript=None,
        analysis_json=None,
        status="uploaded",
        error_message=None,
        word_count=None,
        words_per_minute=None,
        delivery_metrics=None,
        plan_at_time=None,
    )


def claim_run(store: Store, run_id: str, user: AuthUser) -> RunRecord:
    run = store.get_run(run_id)
    if run is None:
        raise ApiError(404, "Run not found")
    if run.user_id == user.id:
        return run
    if run.user_id is not None or not store.assign_run_owner(run_id, user.id):
        # Lost a race or already owned by someone else; ownership never changes here.
        raise ApiError(403, "Run belongs to another user")
    logger.info("run_id=%s run_claimed user_id=%s", run_id, user.id)
    return store.get_run(run_id)


def claim_session(store: Store, session_id: str, user: AuthUser) -> int:
    session_id = (session_id or "").strip()
    if not session_id:
        raise ApiError(400, "session_id is required")
    claimed = store.claim_session_runs(session_id, user.id)
    logger.info("session_runs_claimed user_id=%s count=%s", user.id, claimed)
    return claimed


def sign_upload(
    store: Store,
    storage: ObjectStorage,
    request: UploadSignRequest,
    user: Optional[AuthUser],
) -> Dict[str, Any]:
    run = load_run(store, request.run_id, user)
    if run.session_id != request.session_id:
        raise ApiError(403, "Session does not match run")
    content_type = request.content_type.split(";")[0].strip().lower() or "audio/webm"
    extension = EXTENSION_BY_AUDIO_MIME.get(content_type, ".webm")
    if request.chunk_index is not None:
        path = f"{run.session_id}/{run.id}/chunk_{request.chunk_index}{extension}"
    else:
        path = f"{run.session_id}/{run.id}{extension}"
    try:
        url = storage.signed_upload_url(path, content_type, UPLOAD_URL_TTL_MINUTES)
    except Exception as exc:
        logger.warning("run_id=%s upload_sign_failed", run.id, exc_info=True)
        raise ApiError(500, "Failed to create upload URL", details=truncate(str(exc))) from exc
    return {
        "ok": True,
        "upload_url": url,
        "storage_path": path,
        "bucket": storage.bucket,
        "content_type": content_type,
        "expires_in_minutes": UPLOAD_URL_TTL_MINUTES,
    }


def complete_upload(store: Store, request: UploadCompleteRequest, user: Optional[AuthUser]) -> Dict[str, Any]:
    run = load_run(store, request.run_id, user)
    path = request.path.strip()
    if not path:
        raise ApiError(400, "path is required")
    if not path.startswith(f"{run.session_id}/{run.id}"):
        raise ApiError(400, "Storage path does not belong to this run")

    if request.chunk_index is not None:
        if request.start_ms is None or request.end_ms is None:
            raise ApiError(400, "start_ms and end_ms are required for chunked uploads")
        chunk = store.upsert_chunk(
            run.id,
            chunk_index=request.chunk_index,
            start_ms=request.start_ms,
            end_ms=request.end_ms,
            audio_path=path,
        )
        return {"ok": True, "chunk": record_to_dict(chunk)}

    changes: Dict[str, Any] = {"audio_path": path, "status": "uploaded", "error_message": None}
    if request.duration_ms and request.duration_ms > 0:
        changes["duration_ms"] = request.duration_ms
        changes["audio_seconds"] = request.duration_ms / 1000.0
    updated = store.update_run(run.id, **changes)
    return {"ok": True, "run": record_to_dict(updated)}


def require_owned_run(store: Store, run_id: str, user: AuthUser) -> RunRecord:
    run = store.get_run(run_id)
    if run is None:
        raise ApiError(404, "Run not found")
    if run.user_id != user.id:
        raise ApiError(403, "Unauthorized")
    return run


def create_chunk(
    store: Store,
    run_id: str,
    user: AuthUser,
    *,
    chunk_index: int,
    start_ms: int,
    end_ms: int,
    audio_path: str,
) -> ChunkRecord:
    require_owned_run(store, run_id, user)
    if not audio_path.strip():
        raise ApiError(400, "audio_path must be a non-empty string")
    if chunk_index < 0 or start_ms < 0 or end_ms < start_ms:
        raise ApiError(400, "Invalid chunk_index, start_ms, or end_ms")
    return store.upsert_chunk(
        run_id,
        chunk_index=chunk_index,
        start_ms=start_ms,
        end_ms=end_ms,
        audio_path=audio_path.strip(),
    )


def chunk_transcript(store: Store, run_id: str, chunk_id: str, user: AuthUser) -> str:
    require_owned_run(store, run_id, user)
    chunk = store.get_chunk(chunk_id)
    if chunk is None or chunk.run_id != run_id:
        raise ApiError(404, "Chunk not found")
    if not chunk.transcript:
        raise ApiError(404, "Chunk has no transcript yet", details=f"Current status: {chunk.status}")
    return chunk.transcript


def _mean(values: List[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def _dict_at(payload: Any, *keys: str) -> dict:
    for key in keys:
        payload = payload.get(key) if isinstance(payload, dict) else None
    return payload if isinstance(payload, dict) else {}


def _filler_total(run: RunRecord) -> Optional[float]:
    analysis = run.analysis_json
    for value in (
        _dict_at(analysis, "premium", "filler").get("total"),
        _dict_at(analysis, "premium_insights", "filler_words").get("total_count"),
        _dict_at(run.delivery_metrics).get("filler_count"),
    ):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    return None


def compute_comparisons(runs: List[RunRecord]) -> Dict[str, Optional[float]]:
    wpm, fillers, missing, scores = [], [], [], []
    for run in runs:
        if run.words_per_minute is not None:
            wpm.append(float(run.words_per_minute))
        filler_total = _filler_total(run)
        if filler_total is not None:
            fillers.append(filler_total)
        analysis = _dict_at(run.analysis_json)
        rubric_scores = analysis.get("rubric_scores")
        if isinstance(rubric_scores, list):
            missing.append(float(sum(1 for s in rubric_scores if isinstance(s, dict) and s.get("missing") is True)))
        overall = _dict_at(analysis, "summary").get("overall_score")
        if isinstance(overall, (int, float)) and not isinstance(overall, bool):
            scores.append(float(overall))
    return {
        "avg_wpm": _mean(wpm),
        "avg_filler_words": _mean(fillers),
        "avg_missing_sections": _mean(missing),
        "avg_overall_score": _mean(scores),
    }


def run_progress(store: Store, run_id: str, user: AuthUser) -> Dict[str, Any]:
    run = store.get_run(run_id)
    if run is None:
        raise ApiError(404, "Run not found")
    if run.user_id and run.user_id != user.id:
        raise ApiError(403, "Unauthorized")

    scope: Dict[str, Any] = {"user_id": run.user_id} if run.user_id else {"session_id": run.session_id}
    previous: List[RunRecord] = []
    if run.rubric_id:
        previous = store.list_runs(
            **scope, rubric_id=run.rubric_id, exclude_run_id=run.id, limit=PROGRESS_RUN_LIMIT
        )
    if not previous:
        previous = store.list_runs(**scope, exclude_run_id=run.id, limit=PROGRESS_RUN_LIMIT)

    return {
        "ok": True,
        "previous_runs": [
            {
                "id": r.id,
                "created_at": r.created_at.isoformat(),
                "words_per_minute": r.words_per_minute,
                "analysis_json": r.analysis_json,
            }
            for r in previous
        ],
        "comparisons": compute_comparisons(previous) if previous else None,
    }
