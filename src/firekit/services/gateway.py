"""Sanitizing gateway in front of the realtime database.

Every write is cleaned of ``MISSING`` fields and stamped with exactly one
audit block (``createdAt``/``createdBy`` or ``updatedAt``/``updatedBy``)
before it reaches the store. Reads are returned untouched.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Mapping
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from firekit.core.actions import (
    REQUEST_TYPES,
    Action,
    ChangeCallback,
    Create,
    CreateWithGeneratedId,
    Delete,
    ErrorCallback,
    Get,
    MutationRequest,
    Subscribe,
    Update,
    WriteRequest,
    build_request,
)
from firekit.core.audit import ANONYMOUS, HostEnvironment, stamp
from firekit.core.sanitizer import MISSING, clean
from firekit.errors import BackingStoreError, UnsupportedActionError, ValidationError
from firekit.services.backing_store import BackingStore
from firekit.services.firebase_app import FirebaseConnection, initialize_firebase, require_connection

logger = logging.getLogger(__name__)

T = TypeVar("T")

AUDIT_KEYS = {
    Action.CREATE: ("createdAt", "createdBy"),
    Action.CREATE_WITH_ID: ("createdAt", "createdBy"),
    Action.UPDATE: ("updatedAt", "updatedBy"),
}
RESERVED_KEYS = frozenset(key for keys in AUDIT_KEYS.values() for key in keys)


class Subscription:
    """Handle for a value listener registered through the gateway.

    The listener stays open until :meth:`release` is called. Nothing releases
    it automatically; whoever subscribes must release before tearing down.
    Delivery and release share a lock, so once :meth:`release` returns no
    callback runs.
    """

    def __init__(self, path: str, on_change: ChangeCallback, on_error: Optional[ErrorCallback] = None) -> None:
        self.path = path
        self._on_change = on_change
        self._on_error = on_error
        self._close: Optional[Callable[[], None]] = None
        self._released = False
        # Reentrant so a callback may release its own subscription.
        self._lock = threading.RLock()

    @property
    def active(self) -> bool:
        return not self._released

    def _attach(self, close: Callable[[], None]) -> None:
        with self._lock:
            if not self._released:
                self._close = close
                return
        close()

    def _deliver(self, value: Any) -> None:
        with self._lock:
            if self._released:
                return
            try:
                self._on_change(value)
            except Exception:
                logger.exception("Value callback for %s raised", self.path)

    def _fail(self, exc: BaseException) -> None:
        with self._lock:
            if self._released:
                return
            if self._on_error is None:
                logger.error("Listener at %s failed: %s", self.path, exc)
                return
            self._on_error(exc)

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
            close, self._close = self._close, None
        if close is not None:
            close()
            logger.debug("Listener at %s released", self.path)

    unsubscribe = release

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()


def _validate_path(path: Any) -> str:
    if not isinstance(path, str) or not path.strip():
        raise ValidationError("Path is required")
    return path


def _validate_payload(request: WriteRequest) -> Mapping:
    payload = request.payload
    if payload is MISSING or payload is None:
        raise ValidationError(f"{request.action.value} requires a payload")
    if not isinstance(payload, Mapping):
        raise ValidationError(f"{request.action.value} payload must be a mapping, got {type(payload).__name__}")
    return payload


class SanitizingMutationGateway:
    def __init__(self, connection: Optional[FirebaseConnection], environment: Optional[HostEnvironment] = None) -> None:
        self.connection = connection
        self.environment = environment

    @classmethod
    def from_settings(cls) -> "SanitizingMutationGateway":
        return cls(initialize_firebase())

    def _check(self, request: Any) -> BackingStore:
        store = require_connection(self.connection).store
        if not isinstance(request, REQUEST_TYPES):
            raise UnsupportedActionError(getattr(request, "action", request))
        _validate_path(request.path)
        return store

    def build_payload(self, request: WriteRequest) -> Dict[str, Any]:
        """Clean the request payload and merge in its audit block."""
        payload = _validate_payload(request)
        at_key, by_key = AUDIT_KEYS[request.action]
        record = stamp(request.actor_id or ANONYMOUS, self.environment)

        body = {key: value for key, value in payload.items() if key not in RESERVED_KEYS}
        body[at_key] = record.timestamp
        body[by_key] = record.to_dict()
        return clean(body)

    async def dispatch(self, request: MutationRequest) -> Any:
        store = self._check(request)

        if isinstance(request, Subscribe):
            return self._subscribe(store, request)
        if isinstance(request, Get):
            return await self._call("get", request.path, store.get, request.path)
        if isinstance(request, Delete):
            await self._call("delete", request.path, store.delete, request.path)
            return None

        body = self.build_payload(request)
        if isinstance(request, Create):
            await self._call("set", request.path, store.set, request.path, body)
            return None
        if isinstance(request, Update):
            await self._call("update", request.path, store.update, request.path, body)
            return None
        return await self._call("push", request.path, store.push, request.path, body)

    async def _call(self, operation: str, path: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception as exc:
            raise BackingStoreError(operation, path, exc) from exc

    def _subscribe(self, store: BackingStore, request: Subscribe) -> Subscription:
        subscription = Subscription(request.path, request.on_change, request.on_error)
        try:
            close = store.listen(request.path, subscription._deliver, subscription._fail)
        except Exception as exc:
            raise BackingStoreError("listen", request.path, exc) from exc
        subscription._attach(close)
        return subscription

    async def create(self, path: str, payload: Mapping[str, Any], actor_id: Optional[str] = None) -> None:
        await self.dispatch(Create(path, payload, actor_id))

    async def update(self, path: str, payload: Mapping[str, Any], actor_id: Optional[str] = None) -> None:
        await self.dispatch(Update(path, payload, actor_id))

    async def create_with_id(self, path: str, payload: Mapping[str, Any], actor_id: Optional[str] = None) -> str:
        return await self.dispatch(CreateWithGeneratedId(path, payload, actor_id))

    async def delete(self, path: str) -> None:
        await self.dispatch(Delete(path))

    async def get(self, path: str) -> Any:
        return await self.dispatch(Get(path))

    def subscribe(self, path: str, on_change: ChangeCallback, on_error: Optional[ErrorCallback] = None) -> Subscription:
        request = Subscribe(path, on_change, on_error)
        return self._subscribe(self._check(request), request)

    async def mutate(
        self,
        path: str,
        data: Any = MISSING,
        action: Union[Action, str] = Action.UPDATE,
        action_by: Optional[str] = None,
        on_change: Optional[ChangeCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Any:
        """Loosely typed entry point taking the action by name."""
        require_connection(self.connection)
        request = build_request(action, path, data, action_by, on_change=on_change, on_error=on_error)
        return await self.dispatch(request)
