from collections.abc import Callable
import datetime
import json
from typing import Any

from pydantic import BaseModel

CONVERTERS: dict[str, Callable[[str], Any]] = {
    "datetime": lambda x: datetime.datetime.fromisoformat(x),
    "set": lambda x: set(json.loads(x)),
}


class JsonEncoder(json.JSONEncoder):
    def default(self, o: Any) -> Any:
        if isinstance(o, datetime.datetime):
            return {"val": o.isoformat(), "_spec_type": "datetime"}
        if isinstance(o, (set, frozenset)):
            return {"val": json.dumps(sorted(o)), "_spec_type": "set"}
        if isinstance(o, BaseModel):
            return o.model_dump(mode="json")
        return super().default(o)


def object_hook(obj: dict[str, Any]) -> Any:
    _spec_type = obj.get("_spec_type")
    if not _spec_type:
        return obj

    if _spec_type in CONVERTERS:
        return CONVERTERS[_spec_type](obj["val"])
    raise TypeError(f"Unknown {_spec_type}")


class JsonCoder:
    """Cache values as JSON bytes; datetimes and sets survive the round trip."""

    @classmethod
    def encode(cls, value: Any) -> bytes:
        """Encode a value into bytes for storage in the cache using json."""
        return json.dumps(value, cls=JsonEncoder).encode()

    @classmethod
    def decode(cls, value: bytes | str) -> Any:
        """Decode a stored value back into the original value using json."""
        if isinstance(value, bytes):
            value = value.decode()
        return json.loads(value, object_hook=object_hook)
