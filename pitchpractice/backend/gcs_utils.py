import base64
import json
import os
from datetime import timedelta
from typing import Optional, Protocol

from google.api_core.exceptions import GoogleAPICallError, NotFound
from google.auth.exceptions import GoogleAuthError
from google.cloud import storage
from google.oauth2 import service_account


CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


class StorageError(RuntimeError):
    """Object storage call failed for a reason other than a missing object."""


class ObjectStorage(Protocol):
    bucket: str

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> str:
        pass

    def download_bytes(self, path: str) -> bytes:
        pass

    def signed_download_url(self, path: str, ttl_seconds: int) -> str:
        pass

    def signed_upload_url(self, path: str, content_type: str, ttl_minutes: int) -> str:
        pass


def normalize_blob_path(blob_path: str) -> str:
    return blob_path.lstrip("/")


def build_gs_uri(bucket: str, blob_path: str) -> str:
    return f"gs://{bucket}/{normalize_blob_path(blob_path)}"


def _parse_service_account_json(raw_json: str, source: str) -> dict:
    try:
        parsed = json.loads(raw_json)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"{source} does not contain valid JSON.") from exc
    if not isinstance(parsed, dict):
        raise RuntimeError(f"{source} must contain a JSON object.")
    return parsed


def load_gcp_credentials() -> Optional[service_account.Credentials]:
    """Service-account credentials from B64, inline JSON, or file env vars; None for ADC."""
    env_b64 = os.getenv("GOOGLE_APPLICATION_CREDENTIALS_B64", "").strip()
    if env_b64:
        padded = env_b64 + "=" * ((-len(env_b64)) % 4)
        try:
            decoded = base64.b64decode(padded).decode("utf-8")
        except Exception as exc:
            raise RuntimeError("GOOGLE_APPLICATION_CREDENTIALS_B64 is not valid base64.") from exc
        info = _parse_service_account_json(decoded, "GOOGLE_APPLICATION_CREDENTIALS_B64")
        return service_account.Credentials.from_service_account_info(info, scopes=[CLOUD_PLATFORM_SCOPE])

    env_json = os.getenv("GOOGLE_APPLICATION_CREDENTIALS_JSON", "").strip()
    if env_json:
        info = _parse_service_account_json(env_json, "GOOGLE_APPLICATION_CREDENTIALS_JSON")
        return service_account.Credentials.from_service_account_info(info, scopes=[CLOUD_PLATFORM_SCOPE])

    env_path = os.getenv("GOOGLE_APPLICATION_CREDENTIALS", "").strip()
    if env_path:
        if not os.path.exists(env_path):
            raise RuntimeError(f"GOOGLE_APPLICATION_CREDENTIALS points to a missing file: {env_path}")
        return service_account.Credentials.from_service_account_file(env_path, scopes=[CLOUD_PLATFORM_SCOPE])

    return None


class GCSObjectStorage:
    def __init__(self, bucket: str, project: Optional[str] = None) -> None:
        if not bucket:
            raise RuntimeError("GCS_AUDIO_BUCKET is not set.")
        self.bucket = bucket
        self._project = project
        self._client: Optional[storage.Client] = None
        self._credentials: Optional[service_account.Credentials] = None

    def _get_client(self) -> storage.Client:
        if self._client is None:
            self._credentials = load_gcp_credentials()
            project = self._project or getattr(self._credentials, "project_id", None)
            if self._credentials is not None or project:
                self._client = storage.Client(credentials=self._credentials, project=project)
            else:
                self._client = storage.Client()
        return self._client

    def _blob(self, path: str):
        return self._get_client().bucket(self.bucket).blob(normalize_blob_path(path))

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> str:
        self._blob(path).upload_from_string(data, content_type=content_type)
        return build_gs_uri(self.bucket, path)

    def download_bytes(self, path: str) -> bytes:
        uri = build_gs_uri(self.bucket, path)
        try:
            return self._blob(path).download_as_bytes()
        except NotFound as exc:
            raise FileNotFoundError(f"GCS object not found: {uri}") from exc
        except GoogleAPICallError as exc:
            raise StorageError(f"GCS download failed for {uri}: {exc}") from exc
        except GoogleAuthError as exc:
            raise StorageError(f"GCS credentials error while reading {uri}: {exc}") from exc

    def signed_download_url(self, path: str, ttl_seconds: int) -> str:
        blob = self._blob(path)
        return blob.generate_signed_url(
            version="v4",
            expiration=timedelta(seconds=ttl_seconds),
            method="GET",
            credentials=self._credentials,
        )

    def signed_upload_url(self, path: str, content_type: str, ttl_minutes: int) -> str:
        """V4 signed URL that lets the browser PUT the object directly."""
        blob = self._blob(path)
        return blob.generate_signed_url(
            version="v4",
            expiration=timedelta(minutes=ttl_minutes),
            method="PUT",
            content_type=content_type,
            credentials=self._credentials,
        )
