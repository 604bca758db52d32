"""
Hierarchical data store adapters: Firebase Realtime Database and in-memory testing.
"""

from __future__ import annotations

import copy
import logging
import random
import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

from firebase_admin import db

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Any], None]
ErrorCallback = Callable[[BaseException], None]
CloseListener = Callable[[], None]

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


def split_path(path: str) -> List[str]:
    return [segment for segment in path.strip("/").split("/") if segment]


def join_path(*parts: str) -> str:
    segments: List[str] = []
    for part in parts:
        segments.extend(split_path(part))
    return "/".join(segments)


class PushIdGenerator:
    """Chronologically sortable 20 character keys, like the ones Firebase hands out."""

    def __init__(self) -> None:
        self._last_time = 0
        self._last_random: List[int] = [0] * 12
        self._lock = threading.Lock()

    def __call__(self) -> str:
        with self._lock:
            now = int(time.time() * 1000)
            if now == self._last_time:
                # Same millisecond: increment the random suffix to keep ordering.
                for i in range(11, -1, -1):
                    if self._last_random[i] != 63:
                        self._last_random[i] += 1
                        break
                    self._last_random[i] = 0
            else:
                self._last_random = [random.randrange(64) for _ in range(12)]
            self._last_time = now

            prefix = []
            for _ in range(8):
                prefix.append(PUSH_CHARS[now % 64])
                now //= 64
            return "".join(reversed(prefix)) + "".join(PUSH_CHARS[i] for i in self._last_random)


class BackingStore(Protocol):
    """Defines the operations the gateway needs from the database."""

    def set(self, path: str, value: Any) -> None:
        ...

    def update(self, path: str, value: Mapping[str, Any]) -> None:
        ...

    def delete(self, path: str) -> None:
        ...

    def push(self, path: str, value: Any) -> str:
        ...

    def get(self, path: str) -> Any:
        ...

    def listen(self, path: str, on_change: ChangeCallback, on_error: ErrorCallback) -> CloseListener:
        ...


class InMemoryBackingStore:
    """Test double for the realtime database.

    Writing ``None`` removes a path. Listeners get the full value at their path
    once on registration and again after every write that touches it.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._root: Dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._listeners: Dict[int, Tuple[str, ChangeCallback, ErrorCallback]] = {}
        self._next_listener = 0
        self._lock = threading.RLock()
        self._push_id = PushIdGenerator()
        self.writes: List[Tuple[str, str, Any]] = []

    def reset(self) -> None:
        with self._lock:
            self._root = {}
            self._listeners.clear()
            self.writes.clear()

    def set(self, path: str, value: Any) -> None:
        with self._lock:
            self.writes.append(("set", join_path(path), copy.deepcopy(value)))
            self._write(split_path(path), value)
        self._notify(path)

    def update(self, path: str, value: Mapping[str, Any]) -> None:
        with self._lock:
            self.writes.append(("update", join_path(path), copy.deepcopy(dict(value))))
            base = split_path(path)
            for key, child in value.items():
                self._write(base + split_path(str(key)), child)
        self._notify(path)

    def delete(self, path: str) -> None:
        with self._lock:
            self.writes.append(("delete", join_path(path), None))
            self._write(split_path(path), None)
        self._notify(path)

    def push(self, path: str, value: Any) -> str:
        key = self._push_id()
        self.set(join_path(path, key), value)
        return key

    def get(self, path: str) -> Any:
        with self._lock:
            node: Any = self._root
            for segment in split_path(path):
                if not isinstance(node, dict) or segment not in node:
                    return None
                node = node[segment]
            if node == {}:
                return None
            return copy.deepcopy(node)

    def listen(self, path: str, on_change: ChangeCallback, on_error: ErrorCallback) -> CloseListener:
        with self._lock:
            listener_id = self._next_listener
            self._next_listener += 1
            self._listeners[listener_id] = (join_path(path), on_change, on_error)
        self._deliver(join_path(path), on_change, on_error)

        def close() -> None:
            with self._lock:
                self._listeners.pop(listener_id, None)

        return close

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def _write(self, segments: List[str], value: Any) -> None:
        if not segments:
            self._root = copy.deepcopy(dict(value)) if isinstance(value, Mapping) else {}
            return

        if value is None:
            self._remove(segments)
            return

        node = self._root
        for segment in segments[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                child = {}
                node[segment] = child
            node = child
        node[segments[-1]] = copy.deepcopy(value)

    def _remove(self, segments: List[str]) -> None:
        trail = []
        node = self._root
        for segment in segments[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                return
            trail.append((node, segment))
            node = child
        node.pop(segments[-1], None)
        # Parents left empty by the removal disappear too.
        while trail and not node:
            parent, segment = trail.pop()
            parent.pop(segment, None)
            node = parent

    def _notify(self, path: str) -> None:
        changed = join_path(path)
        with self._lock:
            targets = [
                (listen_path, on_change, on_error)
                for listen_path, on_change, on_error in self._listeners.values()
                if _related(listen_path, changed)
            ]
        for listen_path, on_change, on_error in targets:
            self._deliver(listen_path, on_change, on_error)

    def _deliver(self, path: str, on_change: ChangeCallback, on_error: ErrorCallback) -> None:
        try:
            value = self.get(path)
        except Exception as exc:
            on_error(exc)
            return
        on_change(value)


def _related(a: str, b: str) -> bool:
    if not a or not b or a == b:
        return True
    return a.startswith(b + "/") or b.startswith(a + "/")


class FirebaseBackingStore:
    """Adapter over ``firebase_admin.db`` references."""

    def __init__(self, app: Any = None, url: Optional[str] = None) -> None:
        self.app = app
        self.url = url or None

    def _ref(self, path: str) -> db.Reference:
        return db.reference("/" + join_path(path), app=self.app, url=self.url)

    def set(self, path: str, value: Any) -> None:
        self._ref(path).set(value)

    def update(self, path: str, value: Mapping[str, Any]) -> None:
        self._ref(path).update(dict(value))

    def delete(self, path: str) -> None:
        self._ref(path).delete()

    def push(self, path: str, value: Any) -> str:
        return self._ref(path).push(value).key

    def get(self, path: str) -> Any:
        return self._ref(path).get()

    def listen(self, path: str, on_change: ChangeCallback, on_error: ErrorCallback) -> CloseListener:
        """Register a value listener without blocking the caller.

        The SDK opens its event stream synchronously, so registration runs on
        a daemon thread. Closing before the stream is open closes it as soon
        as registration finishes.
        """
        ref = self._ref(path)
        lock = threading.Lock()
        state: Dict[str, Any] = {"closed": False, "registration": None}

        def _on_event(event: db.Event) -> None:
            if state["closed"]:
                return
            # Events carry a delta relative to ``path``; callers want the whole value.
            try:
                if event.event_type == "put" and event.path == "/":
                    value = event.data
                else:
                    value = ref.get()
            except Exception as exc:
                on_error(exc)
                return
            on_change(value)

        def _register() -> None:
            try:
                registration = ref.listen(_on_event)
            except Exception as exc:
                if not state["closed"]:
                    on_error(exc)
                return
            with lock:
                if not state["closed"]:
                    state["registration"] = registration
                    return
            registration.close()

        def close() -> None:
            with lock:
                state["closed"] = True
                registration, state["registration"] = state["registration"], None
            if registration is not None:
                registration.close()

        threading.Thread(target=_register, name=f"firekit-listen:{path}", daemon=True).start()
        return close
