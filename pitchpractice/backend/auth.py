import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from supabase import Client, create_client


logger = logging.getLogger("uvicorn.error")


@dataclass
class AuthUser:
    id: str
    email: Optional[str] = None
    user_metadata: Dict[str, Any] = field(default_factory=dict)


class AuthProvider(Protocol):
    def get_user(self, access_token: str) -> Optional[AuthUser]:
        pass

    def email_exists(self, email: str) -> bool:
        pass


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def mask_email(email: str) -> str:
    local, _, domain = (email or "").partition("@")
    return f"{local[:2]}***@{domain}" if domain else "***"


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class SupabaseAuthProvider:
    """Token verification and user lookups against the hosted Supabase auth service."""

    def __init__(self, url: Optional[str], key: Optional[str]) -> None:
        self._url = url
        self._key = key
        self._client: Optional[Client] = None

    def _get_client(self) -> Client:
        if not self._url or not self._key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set.")
        if self._client is None:
            self._client = create_client(self._url, self._key)
        return self._client

    def get_user(self, access_token: str) -> Optional[AuthUser]:
        try:
            response = self._get_client().auth.get_user(access_token)
        except Exception:
            logger.info("auth_token_rejected", exc_info=True)
            return None
        user = getattr(response, "user", None)
        if user is None:
            return None
        return AuthUser(
            id=str(user.id),
            email=getattr(user, "email", None),
            user_metadata=dict(getattr(user, "user_metadata", None) or {}),
        )

    def email_exists(self, email: str) -> bool:
        normalized = normalize_email(email)
        client = self._get_client()
        try:
            result = (
                client.table("user_profiles")
                .select("user_id")
                .eq("email", normalized)
                .limit(1)
                .execute()
            )
            if result.data:
                return True
        except Exception:
            logger.warning("check_email profile_lookup_failed falling_back=auth_admin", exc_info=True)

        page = 1
        while True:
            users = client.auth.admin.list_users(page=page, per_page=1000)
            if not users:
                return False
            if any(normalize_email(getattr(u, "email", "") or "") == normalized for u in users):
                return True
            if len(users) < 1000:
                return False
            page += 1
