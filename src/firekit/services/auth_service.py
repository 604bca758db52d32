import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional
import requests
from requests import RequestException

from firekit.config.settings import settings
from firekit.core.validation import (
    assert_email_password,
    assert_new_password,
    validate_email,
    validate_password,
)
from firekit.errors import AuthError, NotInitializedError, ValidationError
from firekit.state.session_state import SessionState


@dataclass
class AuthResult:
    uid: str
    email: str
    id_token: str
    refresh_token: str
    expires_in: int = 0


class FirebaseAuthService:
    """Email/password accounts through the Identity Toolkit REST API."""

    SIGN_UP_PATH = ":signUp"
    SIGN_IN_PATH = ":signInWithPassword"
    UPDATE_PATH = ":update"
    DELETE_PATH = ":delete"

    def __init__(self, auth_url: str, api_key: str, timeout: float = 15) -> None:
        self.auth_url = auth_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> "FirebaseAuthService":
        return cls(settings.firebase_auth_url, settings.firebase_api_key)

    @property
    def is_configured(self) -> bool:
        return bool(self.auth_url and self.api_key)

    def _require_config(self) -> None:
        if not self.is_configured:
            raise NotInitializedError("Firebase Auth not configured: set FIREBASE_AUTH_URL and FIREBASE_API_KEY")

    def sign_up(self, email: str, password: str) -> AuthResult:
        self._require_config()
        assert_email_password(email, password)
        payload = {
            "email": email,
            "password": password,
            "returnSecureToken": True,
        }
        return self._to_result(self._post(self.SIGN_UP_PATH, payload), email)

    def sign_in(self, email: str, password: str) -> AuthResult:
        self._require_config()
        assert_email_password(email, password)
        payload = {
            "email": email,
            "password": password,
            "returnSecureToken": True,
        }
        return self._to_result(self._post(self.SIGN_IN_PATH, payload), email)

    def update_password(self, id_token: str, new_password: str) -> AuthResult:
        self._require_config()
        assert_new_password(new_password)
        payload = {
            "idToken": id_token,
            "password": new_password,
            "returnSecureToken": True,
        }
        response = self._post(self.UPDATE_PATH, payload)
        return self._to_result(response, str(response.get("email") or ""))

    def delete_account(self, id_token: str) -> None:
        self._require_config()
        self._post(self.DELETE_PATH, {"idToken": id_token})

    def change_password(self, email: str, current_password: str, new_password: str) -> AuthResult:
        """Sign in with the current password, then set the new one."""
        self._require_config()
        if not validate_email(email):
            raise ValidationError("Invalid email format")
        if not validate_password(current_password):
            raise ValidationError("Current password is invalid")
        assert_new_password(new_password, "New password must be at least 6 characters long")

        signed_in = self.sign_in(email, current_password)
        return self.update_password(signed_in.id_token, new_password)

    def delete_user(self, email: str, password: str) -> None:
        self._require_config()
        if not validate_email(email):
            raise ValidationError("Invalid email format")
        if not validate_password(password):
            raise ValidationError("Password is invalid")

        signed_in = self.sign_in(email, password)
        self.delete_account(signed_in.id_token)

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.auth_url}{path}"
        try:
            res = requests.post(
                url,
                params={"key": self.api_key},
                headers={"Content-Type": "application/json"},
                json=payload,
                timeout=self.timeout,
            )
        except RequestException as exc:
            raise AuthError("AUTH_SERVICE_UNAVAILABLE") from exc
        try:
            data = res.json()
        except ValueError:
            raise AuthError("AUTH_SERVICE_UNAVAILABLE", code=res.status_code)

        if res.status_code >= 400 or "error" in data:
            error = data.get("error") or {}
            raise AuthError(
                str(error.get("message") or "Authentication request failed"),
                code=error.get("code"),
                payload=data,
            )

        return data

    @staticmethod
    def _to_result(data: Dict[str, Any], email: str) -> AuthResult:
        uid = str(data.get("localId") or "")
        if not uid:
            raise AuthError("INVALID_AUTH_RESPONSE", payload=data)
        return AuthResult(
            uid=uid,
            email=str(data.get("email") or email),
            id_token=str(data.get("idToken") or ""),
            refresh_token=str(data.get("refreshToken") or ""),
            expires_in=int(data.get("expiresIn") or 0),
        )


class AuthSession:
    """Signed-in state on top of :class:`FirebaseAuthService`."""

    def __init__(self, service: Optional[FirebaseAuthService], session: Optional[SessionState] = None) -> None:
        self.service = service
        self.session = session or SessionState()

    def _service(self) -> FirebaseAuthService:
        if self.service is None:
            raise NotInitializedError()
        self.service._require_config()
        return self.service

    async def login(self, email: str, password: str) -> AuthResult:
        result = await asyncio.to_thread(self._service().sign_in, email, password)
        self.session.apply(result)
        return result

    async def signup(self, email: str, password: str) -> AuthResult:
        result = await asyncio.to_thread(self._service().sign_up, email, password)
        self.session.apply(result)
        return result

    async def logout(self) -> None:
        self._service()
        self.session.clear()

    async def change_password(self, new_password: str) -> AuthResult:
        service = self._service()
        assert_new_password(new_password)
        if not self.session.is_authenticated:
            raise AuthError("User not found")
        result = await asyncio.to_thread(service.update_password, self.session.id_token, new_password)
        if not result.email:
            result.email = self.session.email or ""
        self.session.apply(result)
        return result
