"""Message record model and its on-disk serialization."""
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from typing import Any
import orjson
import re
import time
import uuid

from .errors import ValidationFault

_SAFE_UID = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]{0,199}$")


class Record(BaseModel):
    """
    One message flowing through the relay.

    Fields other than the four below are kept as submitted and travel with
    the record unchanged.
    """

    model_config = ConfigDict(extra="allow")

    source: str = Field(..., min_length=1, description="Originating device or channel")
    payload: Any = None
    received: float | None = Field(default=None, description="Seconds since epoch")
    uid: str | None = None

    @field_validator("source", "uid", mode="before")
    @classmethod
    def _coerce_scalar(cls, value):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("source")
    @classmethod
    def _strip_source(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("source must not be blank")
        return value

    @field_validator("uid")
    @classmethod
    def _check_uid(cls, value: str | None) -> str | None:
        if value is not None and not _SAFE_UID.match(value):
            raise ValueError("uid must be a plain file name")
        return value

    @classmethod
    def from_submission(cls, data: Any) -> "Record":
        """Validate submitted data, raising ValidationFault if it is not a record."""
        if not isinstance(data, dict):
            raise ValidationFault("submission must be an object")
        if not data.get("source"):
            raise ValidationFault("submission has no source")
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ValidationFault(f"invalid submission: {exc.errors()[0]['msg']}") from exc

    @classmethod
    def from_bytes(cls, content: bytes) -> "Record":
        return cls.model_validate(orjson.loads(content))

    def to_bytes(self) -> bytes:
        # exclude_unset keeps the submitter's shape: no null payload is invented
        return orjson.dumps(self.model_dump(exclude_unset=True))

    def payload_bytes(self) -> bytes:
        """The payload as sent on the wire: strings raw, anything else as JSON."""
        if isinstance(self.payload, bytes):
            return self.payload
        if isinstance(self.payload, str):
            return self.payload.encode("utf-8")
        return orjson.dumps(self.payload)


def now() -> float:
    return time.time()


def new_uid(received: float) -> str:
    """Derive a uid from the receipt time plus a random suffix."""
    return f"{received:.6f}.{uuid.uuid4().hex[:12]}"
