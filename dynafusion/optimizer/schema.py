"""
Table schema catalog consulted by the optimizer.
"""

import threading
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class AttributeType(str, Enum):
    STRING = "S"
    NUMBER = "N"
    BINARY = "B"


class AttributeDefinition(BaseModel):
    name: str
    type: AttributeType = AttributeType.STRING


class GlobalSecondaryIndex(BaseModel):
    index_name: str
    partition_key: str
    sort_key: Optional[str] = None


class LocalSecondaryIndex(BaseModel):
    index_name: str
    sort_key: str


class TableSchema(BaseModel):
    table_name: str
    partition_key: Optional[str] = None
    sort_key: Optional[str] = None
    attributes: List[AttributeDefinition] = Field(default_factory=list)
    global_secondary_indexes: List[GlobalSecondaryIndex] = Field(default_factory=list)
    local_secondary_indexes: List[LocalSecondaryIndex] = Field(default_factory=list)

    def index_for_partition_key(self, attribute: str) -> Optional[GlobalSecondaryIndex]:
        for index in self.global_secondary_indexes:
            if index.partition_key == attribute:
                return index
        return None


class SchemaCatalog:
    """Thread-safe registry of table schemas."""

    def __init__(self):
        self._schemas: Dict[str, TableSchema] = {}
        self._lock = threading.Lock()

    def register(self, schema: TableSchema):
        with self._lock:
            self._schemas[schema.table_name] = schema

    def get(self, table_name: str) -> Optional[TableSchema]:
        with self._lock:
            return self._schemas.get(table_name)

    def tables(self) -> List[str]:
        with self._lock:
            return sorted(self._schemas)
