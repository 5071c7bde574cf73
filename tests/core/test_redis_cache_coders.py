import datetime

from pydantic import BaseModel
import pytest

from tokenguard.core.redis.cache.coder.json_coder import JsonCoder


class KeyRecord(BaseModel):
    id: str
    created_at: int


def test_plain_json_values() -> None:
    value = {"revoked_at": 1, "ips": ["10.0.0.1"], "nested": {"ok": True}}

    assert JsonCoder.decode(JsonCoder.encode(value)) == value


def test_datetimes_and_sets_keep_their_type() -> None:
    moment = datetime.datetime(2024, 1, 2, 3, 4, 5, tzinfo=datetime.UTC)

    decoded = JsonCoder.decode(JsonCoder.encode({"at": moment, "ids": {"b", "a"}}))

    assert decoded == {"at": moment, "ids": {"a", "b"}}


def test_pydantic_models_are_dumped() -> None:
    encoded = JsonCoder.encode(KeyRecord(id="k1", created_at=5))

    assert JsonCoder.decode(encoded) == {"id": "k1", "created_at": 5}


def test_decode_accepts_str() -> None:
    assert JsonCoder.decode('{"a": 1}') == {"a": 1}


def test_unknown_tagged_value() -> None:
    with pytest.raises(TypeError):
        JsonCoder.decode('{"_spec_type": "decimal", "val": "1"}')
