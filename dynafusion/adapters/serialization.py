"""
Value serialization for cache tiers.
"""

import json
import base64
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Type

from pydantic import BaseModel


class Serializer(ABC):
    """Converts values to and from transport-safe strings."""

    @abstractmethod
    def serialize(self, value: Any) -> str:
        ...

    @abstractmethod
    def deserialize(self, raw: str, value_type: Optional[Type[Any]] = None) -> Any:
        ...


def _default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class JsonSerializer(Serializer):
    """JSON serializer aware of pydantic models and store value types."""

    def serialize(self, value: Any) -> str:
        if isinstance(value, BaseModel):
            return value.model_dump_json()
        return json.dumps(value, default=_default, separators=(",", ":"))

    def deserialize(self, raw: str, value_type: Optional[Type[Any]] = None) -> Any:
        if isinstance(value_type, type) and issubclass(value_type, BaseModel):
            return value_type.model_validate_json(raw)
        return json.loads(raw)
