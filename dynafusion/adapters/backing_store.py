"""
Backing store contract.

Implementations translate an ``AccessRequest`` into a native query or scan
and must surface ``ResourceNotFoundError``, ``ThrottlingError`` and
``ServiceUnavailableError`` so callers can tell the failures apart.
"""

import json
import base64
import binascii
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..models.request import AccessRequest
from ..shared.errors import FieldError, ValidationError


@dataclass
class StorePage:
    """One page returned by the backing store."""

    items: List[Dict[str, Any]] = field(default_factory=list)
    last_evaluated_key: Optional[Dict[str, Any]] = None
    scanned_count: int = 0
    count: int = 0
    consumed_capacity: Optional[float] = None


class BackingStoreClient(ABC):
    """Abstract partition/sort-key store."""

    @abstractmethod
    async def query(self, request: AccessRequest) -> StorePage:
        """Indexed lookup; requires a partition key value."""

    @abstractmethod
    async def scan(self, request: AccessRequest) -> StorePage:
        """Full table (or index) scan with filters applied."""

    async def close(self):
        """Release client resources."""


def encode_cursor(last_evaluated_key: Optional[Dict[str, Any]]) -> Optional[str]:
    """Opaque continuation token for a page boundary."""
    if not last_evaluated_key:
        return None
    payload = json.dumps(last_evaluated_key, sort_keys=True, separators=(",", ":"))
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_cursor(token: Optional[str]) -> Optional[Dict[str, Any]]:
    if not token:
        return None
    try:
        decoded = json.loads(base64.urlsafe_b64decode(token.encode("ascii")).decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeError) as e:
        raise ValidationError(
            "Invalid pagination token",
            field_errors=[FieldError(field="pagination.next_token", message="Token is malformed", code="INVALID_TOKEN")]
        ) from e
    if not isinstance(decoded, dict):
        raise ValidationError(
            "Invalid pagination token",
            field_errors=[FieldError(field="pagination.next_token", message="Token is malformed", code="INVALID_TOKEN")]
        )
    return decoded
