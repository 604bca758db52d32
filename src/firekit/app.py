import asyncio
import base64
import binascii
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from firekit.config.settings import settings
from firekit.core.actions import Action
from firekit.core.audit import HostEnvironment, stamp
from firekit.core.config_converter import convert_to_env
from firekit.core.sanitizer import MISSING, clean
from firekit.errors import (
    AuthError,
    BackingStoreError,
    FirebaseConfigError,
    FirekitError,
    NotInitializedError,
    UnsupportedActionError,
    ValidationError,
)
from firekit.services.auth_service import AuthResult, AuthSession, FirebaseAuthService
from firekit.services.firebase_app import FirebaseConnection, initialize_firebase
from firekit.services.gateway import SanitizingMutationGateway
from firekit.services.storage_service import StorageService, UploadFile

logger = logging.getLogger(__name__)

# JSON has no undefined; the playground accepts this string in its place.
MISSING_TOKEN = "$undefined"

# Starlette renamed its 422 constant; the number is stable.
HTTP_422_UNPROCESSABLE = 422

ERROR_STATUS = (
    (NotInitializedError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ValidationError, HTTP_422_UNPROCESSABLE),
    (UnsupportedActionError, status.HTTP_400_BAD_REQUEST),
    (AuthError, status.HTTP_401_UNAUTHORIZED),
    (BackingStoreError, status.HTTP_502_BAD_GATEWAY),
)


class DispatchPayload(BaseModel):
    path: str
    action: str = Action.UPDATE.value
    data: Any = MISSING_TOKEN
    actor_id: Optional[str] = None


class AuthPayload(BaseModel):
    email: str
    password: str


class ChangePasswordPayload(BaseModel):
    new_password: str


class UploadPayload(BaseModel):
    path: str
    name: str
    content_base64: str
    content_type: str = "application/octet-stream"
    metadata: Dict[str, str] = Field(default_factory=dict)
    uploaded_by: str = "anonymous"


class ConvertConfigPayload(BaseModel):
    config: str


class CleanPayload(BaseModel):
    value: Any = None


def decode_missing(value: Any) -> Any:
    if isinstance(value, str) and value == MISSING_TOKEN:
        return MISSING
    if isinstance(value, list):
        return [decode_missing(item) for item in value]
    if isinstance(value, dict):
        return {key: decode_missing(item) for key, item in value.items()}
    return value


def _http_error(exc: FirekitError) -> HTTPException:
    for kind, code in ERROR_STATUS:
        if isinstance(exc, kind):
            detail: Dict[str, Any] = {"kind": type(exc).__name__, "message": str(exc)}
            if isinstance(exc, AuthError) and exc.code is not None:
                detail["code"] = exc.code
            return HTTPException(status_code=code, detail=detail)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _auth_response(result: AuthResult) -> Dict[str, Any]:
    return {
        "uid": result.uid,
        "email": result.email,
        "id_token": result.id_token,
        "refresh_token": result.refresh_token,
        "expires_in": result.expires_in,
    }


def create_app(
    connection: Optional[FirebaseConnection] = None,
    auth_service: Optional[FirebaseAuthService] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.connection is None:
            try:
                app.state.connection = initialize_firebase()
            except FirebaseConfigError as exc:
                logger.warning("Firebase not initialized: %s", exc)
        yield
        if app.state.connection is not None and connection is None:
            app.state.connection.close()

    app = FastAPI(title="firekit playground", version="1.0.0", lifespan=lifespan)
    app.state.connection = connection
    app.state.auth = AuthSession(auth_service or FirebaseAuthService.from_settings())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _gateway(request: Request) -> SanitizingMutationGateway:
        return SanitizingMutationGateway(
            request.app.state.connection,
            environment=HostEnvironment.from_headers(request.headers),
        )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        conn = app.state.connection
        return {"status": "ok", "initialized": bool(conn and conn.is_initialized)}

    @app.post("/db/dispatch")
    async def dispatch(payload: DispatchPayload, request: Request) -> Dict[str, Any]:
        gateway = _gateway(request)
        try:
            result = await gateway.mutate(
                payload.path,
                decode_missing(payload.data),
                action=payload.action,
                action_by=payload.actor_id,
            )
        except FirekitError as exc:
            raise _http_error(exc) from exc
        return {"path": payload.path, "action": payload.action, "result": result}

    @app.get("/db/watch")
    async def watch(path: str, request: Request, timeout: float = 5.0) -> Dict[str, Any]:
        """Subscribe, wait for the first delivered value, then release."""
        gateway = _gateway(request)
        loop = asyncio.get_running_loop()
        first: asyncio.Future = loop.create_future()

        def _resolve(value: Any) -> None:
            if not first.done():
                first.set_result(value)

        def on_change(value: Any) -> None:
            loop.call_soon_threadsafe(_resolve, value)

        try:
            with gateway.subscribe(path, on_change):
                value = await asyncio.wait_for(first, timeout)
        except FirekitError as exc:
            raise _http_error(exc) from exc
        except asyncio.TimeoutError as exc:
            raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail="No value received") from exc
        return {"path": path, "value": value}

    @app.post("/auth/signup")
    async def sign_up(payload: AuthPayload) -> Dict[str, Any]:
        try:
            result = await app.state.auth.signup(payload.email, payload.password)
        except FirekitError as exc:
            raise _http_error(exc) from exc
        return _auth_response(result)

    @app.post("/auth/login")
    async def login(payload: AuthPayload) -> Dict[str, Any]:
        try:
            result = await app.state.auth.login(payload.email, payload.password)
        except FirekitError as exc:
            raise _http_error(exc) from exc
        return _auth_response(result)

    @app.post("/auth/logout")
    async def logout() -> Dict[str, str]:
        try:
            await app.state.auth.logout()
        except FirekitError as exc:
            raise _http_error(exc) from exc
        return {"status": "signed_out"}

    @app.post("/auth/change-password")
    async def change_password(payload: ChangePasswordPayload) -> Dict[str, Any]:
        try:
            result = await app.state.auth.change_password(payload.new_password)
        except FirekitError as exc:
            raise _http_error(exc) from exc
        return _auth_response(result)

    @app.post("/storage/upload")
    async def upload(payload: UploadPayload) -> Dict[str, Any]:
        try:
            data = base64.b64decode(payload.content_base64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise HTTPException(status_code=HTTP_422_UNPROCESSABLE, detail="content_base64 is not valid base64") from exc

        progress: List[float] = []
        service = StorageService(app.state.connection)
        try:
            result = await service.upload(
                UploadFile(payload.name, data, payload.content_type),
                payload.path,
                metadata=payload.metadata,
                on_progress=progress.append,
                uploaded_by=payload.uploaded_by,
            )
        except FirekitError as exc:
            raise _http_error(exc) from exc
        return {**result, "progress": progress}

    @app.get("/storage")
    async def list_files(prefix: str = "") -> List[Dict[str, Any]]:
        try:
            return await StorageService(app.state.connection).list(prefix)
        except FirekitError as exc:
            raise _http_error(exc) from exc

    @app.delete("/storage/{path:path}")
    async def delete_file(path: str) -> Dict[str, str]:
        try:
            await StorageService(app.state.connection).delete(path)
        except FirekitError as exc:
            raise _http_error(exc) from exc
        return {"status": "deleted"}

    @app.post("/utils/convert-config")
    def convert_config(payload: ConvertConfigPayload) -> Dict[str, str]:
        return {"env": convert_to_env(payload.config)}

    @app.post("/utils/clean")
    def clean_value(payload: CleanPayload) -> Dict[str, Any]:
        cleaned = clean(decode_missing(payload.value))
        return {"value": None if cleaned is MISSING else cleaned}

    @app.get("/utils/stamp")
    def stamp_request(request: Request, actor_id: Optional[str] = None) -> Dict[str, Any]:
        return stamp(actor_id, HostEnvironment.from_headers(request.headers)).to_dict()

    return app


app = create_app()
