import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request

from .auth import AuthProvider, AuthUser, SupabaseAuthProvider, bearer_token
from .billing import PaymentGateway, StripePaymentGateway
from .config import Settings
from .errors import ApiError
from .gcs_utils import GCSObjectStorage, ObjectStorage
from .llm_client import LLMClient, OpenAILLMClient
from .storage import Store, build_store


logger = logging.getLogger("uvicorn.error")


@dataclass
class Services:
    """Every external collaborator a request handler may touch."""

    settings: Settings
    store: Store
    storage: ObjectStorage
    llm: LLMClient
    auth: AuthProvider
    payments: PaymentGateway


def build_services(settings: Optional[Settings] = None) -> Services:
    settings = settings or Settings.from_env()
    store = build_store(settings.database_url)
    logger.info("services_ready storage=%s bucket=%s model=%s", store.storage_name, settings.gcs_bucket, settings.openai_model)
    return Services(
        settings=settings,
        store=store,
        storage=GCSObjectStorage(settings.gcs_bucket, project=settings.gcp_project_id),
        llm=OpenAILLMClient(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            transcribe_model=settings.openai_transcribe_model,
            base_url=settings.openai_base_url,
            timeout_seconds=settings.openai_timeout_seconds,
        ),
        auth=SupabaseAuthProvider(settings.supabase_url, settings.supabase_key),
        payments=StripePaymentGateway(settings.stripe_secret_key, settings.stripe_webhook_secret),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def optional_user(request: Request, authorization: Optional[str] = Header(None)) -> Optional[AuthUser]:
    token = bearer_token(authorization)
    if token is None:
        return None
    return get_services(request).auth.get_user(token)


def require_user(request: Request, authorization: Optional[str] = Header(None)) -> AuthUser:
    user = optional_user(request, authorization)
    if user is None:
        raise ApiError(401, "Unauthorized")
    return user
