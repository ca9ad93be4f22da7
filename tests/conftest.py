import copy
import json
from typing import Any, Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from pitchpractice.backend.auth import AuthUser
from pitchpractice.backend.billing import CheckoutSessionInfo, PaymentError
from pitchpractice.backend.config import Settings
from pitchpractice.backend.llm_client import LLMError, TranscriptionResult
from pitchpractice.backend.models import RunRecord, utc_now
from pitchpractice.backend.services import Services
from pitchpractice.backend.storage import InMemoryStore, new_id
from pitchpractice.backend.web import create_app


VALID_ANALYSIS = {
    "summary": {"overall_score": 7, "top_strengths": ["Clear hook"], "top_improvements": ["Stronger ask"]},
    "rubric_scores": [
        {"criterion": "Clarity", "score": 7, "missing": False},
        {"criterion": "Structure", "score": 6, "missing": True},
    ],
    "line_by_line": [{"quote": "We help teams ship faster", "type": "strength", "comment": "Concrete."}],
}


class FakeLLM:
    """Scripted stand-in for the OpenAI client; each queued item is returned or raised in order."""

    def __init__(self) -> None:
        self.responses: List[Any] = []
        self.calls: List[Dict[str, Any]] = []
        self.image_text = "Criteria: Clarity - clear; Structure - ordered; Delivery - confident"
        self.transcription: Any = TranscriptionResult(
            text="um so we help teams ship faster you know",
            duration_seconds=4.0,
            words=[
                {"word": "um", "start": 0.0, "end": 0.2},
                {"word": "so", "start": 1.0, "end": 1.2},
                {"word": "we", "start": 1.3, "end": 1.4},
            ],
        )

    def queue(self, *items: Any) -> None:
        self.responses.extend(items)

    def complete_json(self, messages, *, temperature=0.3, max_tokens=None) -> str:
        self.calls.append({"messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        if not self.responses:
            raise LLMError("No scripted response.", kind="config")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item if isinstance(item, str) else json.dumps(item)

    def extract_text_from_image(self, image_bytes: bytes, mime_type: str) -> str:
        if isinstance(self.image_text, Exception):
            raise self.image_text
        return self.image_text

    def transcribe(self, audio_bytes: bytes, filename: str, mime_type: str) -> TranscriptionResult:
        if isinstance(self.transcription, Exception):
            raise self.transcription
        return self.transcription


class FakeObjectStorage:
    bucket = "test-bucket"

    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.fail_uploads: Optional[Exception] = None
        self.fail_downloads: Optional[Exception] = None

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> str:
        if self.fail_uploads is not None:
            raise self.fail_uploads
        self.objects[path] = data
        return f"gs://{self.bucket}/{path}"

    def download_bytes(self, path: str) -> bytes:
        if self.fail_downloads is not None:
            raise self.fail_downloads
        if path not in self.objects:
            raise FileNotFoundError(f"GCS object not found: gs://{self.bucket}/{path}")
        return self.objects[path]

    def signed_download_url(self, path: str, ttl_seconds: int) -> str:
        return f"https://storage.test/{path}?ttl={ttl_seconds}"

    def signed_upload_url(self, path: str, content_type: str, ttl_minutes: int) -> str:
        return f"https://storage.test/upload/{path}?ttl={ttl_minutes * 60}"


class FakeAuth:
    def __init__(self) -> None:
        self.users: Dict[str, AuthUser] = {
            "token-alice": AuthUser(id="user-alice", email="alice@example.com"),
            "token-bob": AuthUser(id="user-bob", email="bob@example.com"),
        }
        self.known_emails = {"alice@example.com"}
        self.lookup_error: Optional[Exception] = None

    def get_user(self, access_token: str) -> Optional[AuthUser]:
        return self.users.get(access_token)

    def email_exists(self, email: str) -> bool:
        if self.lookup_error is not None:
            raise self.lookup_error
        return email in self.known_emails


class FakePayments:
    def __init__(self) -> None:
        self.sessions: Dict[str, CheckoutSessionInfo] = {}
        self.created: List[Dict[str, Any]] = []
        self.webhook_event: Tuple[str, Optional[CheckoutSessionInfo]] = ("ping", None)

    def create_checkout_session(self, *, price_id, success_url, cancel_url, metadata, customer_email=None):
        self.created.append({"price_id": price_id, "metadata": metadata, "customer_email": customer_email})
        return CheckoutSessionInfo(id="cs_test_new", url="https://checkout.test/cs_test_new", price_id=price_id)

    def retrieve_checkout_session(self, checkout_session_id: str) -> CheckoutSessionInfo:
        if checkout_session_id not in self.sessions:
            raise PaymentError("No such checkout session", kind="invalid_request")
        return self.sessions[checkout_session_id]

    def parse_webhook(self, payload: bytes, signature: Optional[str]):
        if signature != "valid":
            raise PaymentError("Invalid webhook signature.", kind="signature")
        return self.webhook_event

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        return f"https://billing.test/{customer_id}"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        stripe_prices={"starter": "price_starter", "coach": "price_coach", "daypass": "price_daypass"},
        frontend_origins=["http://localhost:3000"],
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def object_storage() -> FakeObjectStorage:
    return FakeObjectStorage()


@pytest.fixture
def auth() -> FakeAuth:
    return FakeAuth()


@pytest.fixture
def payments() -> FakePayments:
    return FakePayments()


@pytest.fixture
def services(settings, store, object_storage, llm, auth, payments) -> Services:
    return Services(
        settings=settings,
        store=store,
        storage=object_storage,
        llm=llm,
        auth=auth,
        payments=payments,
    )


@pytest.fixture
def client(services) -> TestClient:
    with TestClient(create_app(services)) as test_client:
        yield test_client


@pytest.fixture
def alice() -> Dict[str, str]:
    return {"Authorization": "Bearer token-alice"}


@pytest.fixture
def bob() -> Dict[str, str]:
    return {"Authorization": "Bearer token-bob"}


def make_run(store, **overrides) -> RunRecord:
    values = {
        "id": new_id(),
        "session_id": "session-1",
        "created_at": utc_now(),
        "status": "transcribed",
        "audio_path": "session-1/run.webm",
        "transcript": "We help teams ship faster. Our ask is a pilot.",
        "duration_ms": 30000,
        "words_per_minute": 130,
    }
    values.update(overrides)
    return store.insert_run(RunRecord(**values))


@pytest.fixture
def run_factory(store):
    def _factory(**overrides) -> RunRecord:
        return make_run(store, **overrides)

    return _factory


@pytest.fixture
def valid_analysis() -> Dict[str, Any]:
    return copy.deepcopy(VALID_ANALYSIS)
