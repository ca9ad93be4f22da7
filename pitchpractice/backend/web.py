import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Header, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from .analysis import analyze_run
from .auth import AuthUser, mask_email, normalize_email
from .billing import create_checkout, create_portal, handle_webhook, sync_checkout
from .constants import MAX_REQUEST_BYTES, MAX_RUBRIC_FILE_BYTES, MAX_UPLOAD_BYTES
from .errors import ApiError, install_error_handlers
from .models import (
    AnalyzeRequest,
    CheckEmailRequest,
    CheckEmailResponse,
    CheckoutRequest,
    ClaimRunsRequest,
    CopilotRequest,
    CreateChunkRequest,
    CreateRubricRequest,
    CreateRunResponse,
    GenerateRubricRequest,
    ParseRubricRequest,
    ParseRubricResponse,
    SyncCheckoutRequest,
    UpdateRubricRequest,
    UploadCompleteRequest,
    UploadSignRequest,
)
from .plans import (
    can_edit_rubrics,
    can_view_premium_insights,
    can_view_progress_panel,
    resolve_plan,
)
from .rubric_llm import generate_rubric_draft, parse_rubric_file, parse_rubric_input, run_copilot
from . import rubrics as rubric_service
from . import runs as run_service
from .services import Services, build_services, get_services, optional_user, require_user
from .transcription import read_upload_bytes, transcribe_chunk, transcribe_run


logger = logging.getLogger("uvicorn.error")

NO_STORE = {"Cache-Control": "no-store"}
SIZE_LIMITED_PREFIXES = ("/api/runs", "/api/rubrics", "/api/uploads")

router = APIRouter()


@router.get("/health")
def health(services: Services = Depends(get_services)) -> dict:
    return {"status": "ok", "storage": services.store.storage_name}


@router.post("/api/runs/create", response_model=CreateRunResponse)
async def create_run(
    audio: Optional[UploadFile] = File(None),
    session_id: Optional[str] = Form(None),
    rubric_id: Optional[str] = Form(None),
    rubric_json: Optional[str] = Form(None),
    title: Optional[str] = Form(None),
    duration_ms: Optional[str] = Form(None),
    pitch_context: Optional[str] = Form(None),
    services: Services = Depends(get_services),
    user: Optional[AuthUser] = Depends(optional_user),
) -> CreateRunResponse:
    if audio is None:
        raise ApiError(400, "Audio file is required")
    if not (session_id or "").strip():
        raise ApiError(400, "Session ID is required", details="session_id is missing from request")

    data = await read_upload_bytes(audio, field_name="audio", max_size_bytes=MAX_UPLOAD_BYTES)
    run = await run_in_threadpool(
        run_service.create_run,
        services.store,
        services.storage,
        audio=data,
        filename=audio.filename,
        content_type=audio.content_type,
        session_id=session_id,
        user=user,
        rubric_id=rubric_id,
        rubric_json=rubric_json,
        title=title,
        duration_ms=duration_ms,
        pitch_context=pitch_context,
    )
    return CreateRunResponse(id=run.id, status=run.status, audio_path=run.audio_path)


@router.get("/api/runs")
def list_runs(
    limit: int = Query(run_service.RUN_LIST_LIMIT, ge=1, le=200),
    services: Services = Depends(get_services),
    user: AuthUser = Depends(require_user),
) -> list:
    records = services.store.list_runs(user_id=user.id, limit=limit)
    return [run_service.record_to_dict(record) for record in records]


@router.post("/api/runs/claim")
def claim_session_runs(
    payload: ClaimRunsRequest,
    services: Services = Depends(get_services),
    user: AuthUser = Depends(require_user),
) -> dict:
    claimed = run_service.claim_session(services.store, payload.session_id, user)
    return {"ok": True, "claimed": claimed}


@router.get("/api/runs/{run_id}")
def get_run(run_id: str, services: Services = Depends(get_services)) -> JSONResponse:
    try:
        run = run_service.run_detail(services.store, services.storage, run_id)
    except ApiError as exc:
        return JSONResponse(status_code=exc.status_code, content=exc.body(), headers=NO_STORE)
    return JSONResponse(content={"ok": True, "run": run}, headers=NO_STORE)


@router.get("/api/runs/{run_id}/audio-url")
def get_audio_url(
    run_id: str,
    services: Services = Depends(get_services),
    user: Optional[AuthUser] = Depends(optional_user),
) -> dict:
    return run_service.audio_url(services.store, services.storage, run_id, user)


@router.post("/api/runs/{run_id}/reset")
def reset_run(
    run_id: str,
    services: Services = Depends(get_services),
    user: Optional[AuthUser] = Depends(optional_user),
) -> dict:
    run = run_service.reset_run(services.store, run_id, user)
    return {"ok": True, "message": "Transcription reset successfully", "run": run_service.record_to_dict(run)}


@router.post("/api/runs/{run_id}/claim")
def claim_run(
    run_id: str,
    services: Services = Depends(get_services),
    user: AuthUser = Depends(require_user),
) -> dict:
    run = run_service.claim_run(services.store, run_id, user)
    return {"ok": True, "run": run_service.record_to_dict(run)}


@router.post("/api/runs/{run_id}/transcribe")
def transcribe(
    run_id: str,
    services: Services = Depends(get_services),
    user: Optional[AuthUser] = Depends(optional_user),
) -> dict:
    run_service.load_run(services.store, run_id, user)
    run = transcribe_run(services.store, services.storage, services.llm, run_id)
    return {"ok": True, "run": run_service.record_to_dict(run)}


@router.post("/api/runs/{run_id}/analyze")
def analyze(
    run_id: str,
    payload: Optional[AnalyzeRequest] = None,
    services: Services = Depends(get_services),
    user: Optional[AuthUser] = Depends(optional_user),
) -> dict:
    payload = payload or AnalyzeRequest()
    run_service.load_run(services.store, run_id, user)
    run = analyze_run(
        services.store,
        services.llm,
        run_id,
        rubric_id=payload.rubric_id,
        prompt_rubric=payload.prompt_rubric,
        pitch_context=payload.pitch_context,
        caller_id=user.id if user else None,
    )
    return {"ok": True, "run": run_service.record_to_dict(run)}


@router.get("/api/runs/{run_id}/progress")
def run_progress(
    run_id: str,
    services: Services = Depends(get_services),
    user: AuthUser = Depends(require_user),
) -> dict:
    return run_service.run_progress(services.store, run_id, user)


@router.post("/api/runs/{run_id}/chunks")
def create_chunk(
    run_id: str,
    payload: CreateChunkRequest,
    services: Services = Depends(get_services),
    user: AuthUser = Depends(require_user),
) -> dict:
    chunk = run_service.create_chunk(
        services.store,
        run_id,
        user,
        chunk_index=payload.chunk_index,
        start_ms=payload.start_ms,
        end_ms=payload.end_ms,
        audio_path=payload.audio_path,
    )
    return {"ok": True, "chunk": run_service.record_to_dict(chunk)}


@router.get("/api/runs/{run_id}/chunks")
def list_chunks(
    run_id: str,
    services: Services = Depends(get_services),
    user: AuthUser = Depends(require_user),
) -> dict:
    run_service.require_owned_run(services.store, run_id, user)
    chunks = services.store.list_chunks(run_id)
    return {"ok": True, "chunks": [run_service.record_to_dict(chunk) for chunk in chunks]}


@router.post("/api/runs/{run_id}/chunks/{chunk_id}/transcribe")
def transcribe_run_chunk(
    run_id: str,
    chunk_id: str,
    services: Services = Depends(get_services),
    user: AuthUser = Depends(require_user),
) -> dict:
    run_service.require_owned_run(services.store, run_id, user)
    chunk = transcribe_chunk(services.store, services.storage, services.llm, run_id, chunk_id)
    return {"ok": True, "chunk": run_service.record_to_dict(chunk)}


@router.get("/api/runs/{run_id}/chunks/{chunk_id}/transcript.txt", response_class=PlainTextResponse)
def chunk_transcript(
    run_id: str,
    chunk_id: str,
    services: Services = Depends(get_services),
    user: AuthUser = Depends(require_user),
) -> PlainTextResponse:
    text = run_service.chunk_transcript(services.store, run_id, chunk_id, user)
    return PlainTextResponse(
        text,
        headers={"Content-Disposition": f'attachment; filename="chunk_{chunk_id}.txt"', **NO_STORE},
    )


@router.post("/api/uploads/sign")
def sign_upload(
    payload: UploadSignRequest,
    services: Services = Depends(get_services),
    user: Optional[AuthUser] = Depends(optional_user),
) -> dict:
    return run_service.sign_upload(services.store, services.storage, payload, user)


@router.post("/api/uploads/complete")
def complete_upload(
    payload: UploadCompleteRequest,
    services: Services = Depends(get_services),
    user: Optional[AuthUser] = Depends(optional_user),
) -> dict:
    return run_service.complete_upload(services.store, payload, user)


@router.get("/api/rubrics")
def list_rubrics(
    scope: str = Query("templates"),
    services: Services = Depends(get_services),
    user: Optional[AuthUser] = Depends(optional_user),
) -> list:
    records = rubric_service.list_rubrics(services.store, scope, user)
    return [run_service.record_to_dict(record) for record in records]


@router.post("/api/rubrics", status_code=201)
def create_rubric(
    payload: CreateRubricRequest,
    services: Services = Depends(get_services),
    user: AuthUser = Depends(require_user),
) -> dict:
    record = rubric_service.create_rubric(services.store, payload, user)
    return run_service.record_to_dict(record)


@router.post("/api/rubrics/parse", response_model=ParseRubricResponse)
async def parse_rubric(request: Request, services: Services = Depends(get_services)) -> ParseRubricResponse:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        upload = form.get("rubric_file")
        if upload is None or isinstance(upload, str):
            raise ApiError(400, "rubric_file is required for multipart uploads")
        use_ai = str(form.get("use_ai", "true")).strip().lower() not in ("false", "0", "no")
        data = await read_upload_bytes(upload, field_name="rubric", max_size_bytes=MAX_RUBRIC_FILE_BYTES)
        parsed, source = await run_in_threadpool(
            parse_rubric_file, services.llm, upload.filename or "", data, use_ai
        )
    else:
        try:
            body = ParseRubricRequest.model_validate(await request.json())
        except ValueError as exc:
            raise ApiError(400, 'Text is required. Provide { "text": "..." } in the request body.') from exc
        parsed, source = await run_in_threadpool(parse_rubric_input, services.llm, body.text, body.use_ai)

    logger.info("rubric_parse source=%s criteria=%s warnings=%s", source, len(parsed.rubric.criteria), len(parsed.warnings))
    return ParseRubricResponse(rubric=parsed.rubric, warnings=parsed.warnings, source=source)


@router.post("/api/rubrics/generate")
def generate_rubric(
    payload: GenerateRubricRequest,
    services: Services = Depends(get_services),
    user: AuthUser = Depends(require_user),
) -> dict:
    draft = generate_rubric_draft(services.llm, payload.messages, payload.current_draft)
    return {"ok": True, "draft": draft}


@router.post("/api/rubrics/copilot")
def rubric_copilot(
    payload: CopilotRequest,
    services: Services = Depends(get_services),
    user: AuthUser = Depends(require_user),
) -> dict:
    rubric = run_copilot(services.llm, payload)
    return {"ok": True, "rubric": rubric}


@router.get("/api/rubrics/{rubric_id}")
def get_rubric(
    rubric_id: str,
    services: Services = Depends(get_services),
    user: Optional[AuthUser] = Depends(optional_user),
) -> dict:
    return run_service.record_to_dict(rubric_service.get_rubric(services.store, rubric_id, user))


@router.patch("/api/rubrics/{rubric_id}")
def update_rubric(
    rubric_id: str,
    payload: UpdateRubricRequest,
    services: Services = Depends(get_services),
    user: AuthUser = Depends(require_user),
) -> dict:
    record = rubric_service.update_rubric(services.store, rubric_id, payload, user)
    return run_service.record_to_dict(record)


@router.delete("/api/rubrics/{rubric_id}")
def delete_rubric(
    rubric_id: str,
    services: Services = Depends(get_services),
    user: AuthUser = Depends(require_user),
) -> dict:
    rubric_service.delete_rubric(services.store, rubric_id, user)
    return {"ok": True}


@router.get("/api/plan")
def get_plan(
    session_id: Optional[str] = Query(None),
    services: Services = Depends(get_services),
    user: Optional[AuthUser] = Depends(optional_user),
) -> dict:
    plan = resolve_plan(services.store, user.id if user else None, session_id)
    return {
        "plan": plan.value,
        "features": {
            "edit_rubrics": can_edit_rubrics(plan.value),
            "premium_insights": can_view_premium_insights(plan.value),
            "progress_panel": can_view_progress_panel(plan.value),
        },
    }


@router.post("/api/stripe/checkout")
def stripe_checkout(
    payload: CheckoutRequest,
    services: Services = Depends(get_services),
    user: Optional[AuthUser] = Depends(optional_user),
) -> dict:
    info = create_checkout(services.payments, services.settings, payload.plan, user, payload.session_id)
    return {"ok": True, "url": info.url, "checkout_session_id": info.id}


@router.post("/api/stripe/sync")
def stripe_sync(
    payload: SyncCheckoutRequest,
    services: Services = Depends(get_services),
    user: Optional[AuthUser] = Depends(optional_user),
) -> dict:
    record = sync_checkout(
        services.store,
        services.payments,
        services.settings,
        payload.checkout_session_id,
        user,
        payload.session_id,
    )
    return {"ok": True, "plan": record.plan, "entitlement": run_service.record_to_dict(record)}


@router.post("/api/stripe/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    services: Services = Depends(get_services),
) -> dict:
    payload = await request.body()
    return await run_in_threadpool(
        handle_webhook, services.store, services.payments, services.settings, payload, stripe_signature
    )


@router.post("/api/stripe/portal")
def stripe_portal(services: Services = Depends(get_services), user: AuthUser = Depends(require_user)) -> dict:
    url = create_portal(services.store, services.payments, services.settings, user)
    return {"ok": True, "url": url}


@router.post("/api/auth/check-email", response_model=CheckEmailResponse)
def check_email(payload: CheckEmailRequest, services: Services = Depends(get_services)) -> CheckEmailResponse:
    email = normalize_email(payload.email)
    if not email or "@" not in email:
        raise ApiError(400, "A valid email is required")
    try:
        exists = services.auth.email_exists(email)
    except Exception:
        logger.warning("check_email lookup_failed email=%s defaulting=false", mask_email(email), exc_info=True)
        exists = False
    return CheckEmailResponse(exists=exists)


def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or build_services()
    app = FastAPI(title="PitchPractice Backend")
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=services.settings.frontend_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def enforce_upload_size(request, call_next):
        if request.method in ("POST", "PUT", "PATCH") and request.url.path.startswith(SIZE_LIMITED_PREFIXES):
            content_length = request.headers.get("content-length")
            if content_length:
                try:
                    if int(content_length) > MAX_REQUEST_BYTES:
                        return JSONResponse(
                            status_code=413,
                            content={"ok": False, "error": f"Request too large. Max size is {MAX_REQUEST_BYTES} bytes."},
                        )
                except ValueError:
                    pass
        return await call_next(request)

    install_error_handlers(app)
    app.include_router(router)
    return app

