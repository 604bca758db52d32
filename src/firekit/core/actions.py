from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Union

from firekit.core.sanitizer import MISSING
from firekit.errors import UnsupportedActionError, ValidationError


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    CREATE_WITH_ID = "createWithId"
    GET = "get"
    SUBSCRIBE = "onValue"

    @classmethod
    def parse(cls, value: Union["Action", str]) -> "Action":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            for member in cls:
                if value in (member.value, member.name, member.name.lower()):
                    return member
        raise UnsupportedActionError(value)


ChangeCallback = Callable[[Any], None]
ErrorCallback = Callable[[BaseException], None]


@dataclass(frozen=True)
class Create:
    path: str
    payload: Mapping[str, Any] = MISSING
    actor_id: Optional[str] = None

    action = Action.CREATE


@dataclass(frozen=True)
class Update:
    path: str
    payload: Mapping[str, Any] = MISSING
    actor_id: Optional[str] = None

    action = Action.UPDATE


@dataclass(frozen=True)
class CreateWithGeneratedId:
    path: str
    payload: Mapping[str, Any] = MISSING
    actor_id: Optional[str] = None

    action = Action.CREATE_WITH_ID


@dataclass(frozen=True)
class Delete:
    path: str

    action = Action.DELETE


@dataclass(frozen=True)
class Get:
    path: str

    action = Action.GET


@dataclass(frozen=True)
class Subscribe:
    path: str
    on_change: ChangeCallback
    on_error: Optional[ErrorCallback] = None

    action = Action.SUBSCRIBE


WriteRequest = Union[Create, Update, CreateWithGeneratedId]
MutationRequest = Union[Create, Update, CreateWithGeneratedId, Delete, Get, Subscribe]

WRITE_REQUESTS = (Create, Update, CreateWithGeneratedId)
REQUEST_TYPES = (Create, Update, CreateWithGeneratedId, Delete, Get, Subscribe)


def build_request(
    action: Union[Action, str],
    path: str,
    payload: Any = MISSING,
    actor_id: Optional[str] = None,
    on_change: Optional[ChangeCallback] = None,
    on_error: Optional[ErrorCallback] = None,
) -> MutationRequest:
    """Turn a loosely typed action into its request variant.

    Fields the action does not use are dropped; nothing else is checked here.
    """
    kind = Action.parse(action)
    if kind is Action.CREATE:
        return Create(path, payload, actor_id)
    if kind is Action.UPDATE:
        return Update(path, payload, actor_id)
    if kind is Action.CREATE_WITH_ID:
        return CreateWithGeneratedId(path, payload, actor_id)
    if kind is Action.DELETE:
        return Delete(path)
    if kind is Action.GET:
        return Get(path)
    if on_change is None:
        raise ValidationError(f"{kind.value} requires an on_change callback")
    return Subscribe(path, on_change, on_error)
