from __future__ import annotations

import time
import uuid
from typing import Annotated, Any, Dict, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------

class RequestError(Exception):
    """Error reported synchronously to the caller with a numeric status."""

    status = 500

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


class BadRequest(RequestError):
    status = 400


class NotFound(RequestError):
    status = 404


class PayloadTooLarge(RequestError):
    status = 413


# ---------------------------------------------------------------------------
# Operations (closed tagged variant)
# ---------------------------------------------------------------------------

class _Op(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class Register(_Op):
    op: Literal["register"] = "register"
    name: Optional[str] = None
    id: Optional[str] = None


class Unregister(_Op):
    op: Literal["unregister"] = "unregister"
    id: Optional[str] = None


class Offer(_Op):
    op: Literal["offer"] = "offer"
    id: Optional[str] = None
    offer: Any = None
    name: Optional[str] = None


class Answer(_Op):
    op: Literal["answer"] = "answer"
    id: Optional[str] = None
    answer: Any = None
    name: Optional[str] = None


class Reject(_Op):
    op: Literal["reject"] = "reject"
    id: Optional[str] = None
    name: Optional[str] = None


class Wait(_Op):
    op: Literal["wait"] = "wait"
    id: Optional[str] = None


Operation = Annotated[
    Union[Register, Unregister, Offer, Answer, Reject, Wait],
    Field(discriminator="op"),
]

_operation_adapter: TypeAdapter[Operation] = TypeAdapter(Operation)

# First key present wins, in this order.
OPERATION_KEYS = ("register", "unregister", "offer", "answer", "reject", "wait")


def _fields_for(key: str, params: Mapping[str, Any]) -> Dict[str, Any]:
    if key == "register":
        return {"name": params.get("register"), "id": params.get("id")}
    if key == "unregister":
        return {"id": params.get("unregister")}
    if key == "offer":
        return {"id": params.get("id"), "offer": params.get("offer"), "name": params.get("name")}
    if key == "answer":
        return {"id": params.get("id"), "answer": params.get("answer"), "name": params.get("name")}
    if key == "reject":
        return {"id": params.get("id"), "name": params.get("reject")}
    return {"id": params.get("wait")}


def parse_operation(params: Mapping[str, Any]) -> Operation:
    """Normalise raw request parameters into one of the six operations.

    Raises BadRequest when no operation key is present or a value has the
    wrong type. Missing required values are left as None; the directory
    reports those with operation-specific messages.
    """

    for key in OPERATION_KEYS:
        if key in params:
            break
    else:
        raise BadRequest("unknown request parameters")

    try:
        return _operation_adapter.validate_python({"op": key, **_fields_for(key, params)})
    except ValidationError as exc:
        raise BadRequest("invalid request parameters") from exc


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------

def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


def new_user_id() -> str:
    return str(uuid.uuid4())


def is_uuid_v4(value: str) -> bool:
    try:
        return uuid.UUID(str(value)).version == 4
    except Exception:
        return False


__all__ = [
    "RequestError",
    "BadRequest",
    "NotFound",
    "PayloadTooLarge",
    "Register",
    "Unregister",
    "Offer",
    "Answer",
    "Reject",
    "Wait",
    "Operation",
    "OPERATION_KEYS",
    "parse_operation",
    "now_ms",
    "new_user_id",
    "is_uuid_v4",
]
