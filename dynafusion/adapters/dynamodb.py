"""
DynamoDB backing store client.

boto3 is synchronous, so every call runs in a worker thread via
``asyncio.to_thread``. botocore errors are mapped onto the engine's
error taxonomy.
"""

import asyncio
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import boto3
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..models.request import AccessRequest, FilterOperator, Predicate, SortDirection
from ..shared.config import StoreSettings
from ..shared.errors import (
    ConfigurationError,
    FieldError,
    ResourceNotFoundError,
    ServiceUnavailableError,
    ThrottlingError,
    ValidationError,
)
from ..shared.logging import get_logger
from ..shared.retry import RetryConfig, retry_on_exception
from .backing_store import BackingStoreClient, StorePage, decode_cursor


THROTTLING_CODES = {
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
}

_COMPARISONS = {
    FilterOperator.EQUALS: "=",
    FilterOperator.NOT_EQUALS: "<>",
    FilterOperator.LESS_THAN: "<",
    FilterOperator.LESS_THAN_OR_EQUAL: "<=",
    FilterOperator.GREATER_THAN: ">",
    FilterOperator.GREATER_THAN_OR_EQUAL: ">=",
}


def _to_store_value(value: Any) -> Any:
    """boto3 rejects floats; route them through Decimal."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_store_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_store_value(v) for v in value]
    return value


def _from_store_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_store_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_store_value(v) for v in value]
    if isinstance(value, set):
        return sorted(_from_store_value(v) for v in value)
    return value


class ExpressionBuilder:
    """Accumulates placeholder names and values for one request."""

    def __init__(self):
        self._serializer = TypeSerializer()
        self.names: Dict[str, str] = {}
        self.values: Dict[str, Dict[str, Any]] = {}
        self._name_index = 0
        self._value_index = 0

    def name(self, attribute: str) -> str:
        for placeholder, existing in self.names.items():
            if existing == attribute:
                return placeholder
        placeholder = f"#attr{self._name_index}"
        self._name_index += 1
        self.names[placeholder] = attribute
        return placeholder

    def value(self, value: Any) -> str:
        placeholder = f":val{self._value_index}"
        self._value_index += 1
        self.values[placeholder] = self._serializer.serialize(_to_store_value(value))
        return placeholder

    def condition(self, attribute: str, predicate: Predicate) -> str:
        name = self.name(attribute)
        operator = predicate.operator

        if operator in _COMPARISONS:
            return f"{name} {_COMPARISONS[operator]} {self.value(predicate.value)}"
        if operator == FilterOperator.BETWEEN:
            values = predicate.values
            if len(values) < 2:
                raise ValidationError(
                    "Between requires two values",
                    field_errors=[FieldError(field=f"filters.{attribute}", message="Between requires two values")]
                )
            return f"{name} BETWEEN {self.value(values[0])} AND {self.value(values[1])}"
        if operator in (FilterOperator.IN, FilterOperator.NOT_IN):
            values = predicate.values
            if not values:
                raise ValidationError(
                    "Membership filter requires values",
                    field_errors=[FieldError(field=f"filters.{attribute}", message="At least one value is required")]
                )
            placeholders = ", ".join(self.value(v) for v in values)
            expression = f"{name} IN ({placeholders})"
            return expression if operator == FilterOperator.IN else f"NOT ({expression})"
        if operator == FilterOperator.CONTAINS:
            return f"contains({name}, {self.value(predicate.value)})"
        if operator == FilterOperator.BEGINS_WITH:
            return f"begins_with({name}, {self.value(predicate.value)})"
        if operator == FilterOperator.EXISTS:
            return f"attribute_exists({name})"
        return f"attribute_not_exists({name})"

    def filter_expression(self, filters: Dict[str, Predicate]) -> Optional[str]:
        conditions = [self.condition(attribute, predicate) for attribute, predicate in filters.items()]
        return " AND ".join(conditions) if conditions else None

    def projection(self, attributes: Tuple[str, ...]) -> Optional[str]:
        if not attributes:
            return None
        return ", ".join(self.name(attribute) for attribute in attributes)

    def apply(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if self.names:
            params["ExpressionAttributeNames"] = dict(self.names)
        if self.values:
            params["ExpressionAttributeValues"] = dict(self.values)
        return params


class DynamoDBStoreClient(BackingStoreClient):
    """Backing store client for Amazon DynamoDB."""

    def __init__(self, settings: Optional[StoreSettings] = None, client: Any = None):
        self.settings = settings or StoreSettings()
        self.logger = get_logger("dynafusion.adapters.dynamodb")
        self._client = client
        self._deserializer = TypeDeserializer()
        self._serializer = TypeSerializer()

    def _get_client(self):
        """Get DynamoDB client."""
        if self._client is None:
            try:
                self._client = boto3.client(
                    "dynamodb",
                    region_name=self.settings.region_name,
                    endpoint_url=self.settings.endpoint_url,
                    config=BotoConfig(retries={"max_attempts": 2, "mode": "standard"})
                )
            except (BotoCoreError, ValueError) as e:
                raise ConfigurationError(
                    "Cannot create DynamoDB client",
                    details={"region_name": self.settings.region_name, "error": str(e)}
                ) from e
        return self._client

    async def query(self, request: AccessRequest) -> StorePage:
        """Run an indexed query."""
        params = self.build_query_params(request)
        response = await self._call("query", request.table_name, params)
        return self._to_page(response)

    async def scan(self, request: AccessRequest) -> StorePage:
        """Run a filtered scan."""
        params = self.build_scan_params(request)
        response = await self._call("scan", request.table_name, params)
        return self._to_page(response)

    def build_query_params(self, request: AccessRequest) -> Dict[str, Any]:
        if not request.partition_key or not request.has_partition_key_value:
            raise ValidationError(
                "Query requires a partition key value",
                field_errors=[FieldError(field="partition_key_value", message="Partition key value is required", code="REQUIRED")]
            )

        builder = ExpressionBuilder()
        key_condition = f"{builder.name(request.partition_key)} = {builder.value(request.partition_key_value)}"
        if request.has_sort_key_value:
            key_condition += f" AND {builder.name(request.sort_key)} = {builder.value(request.sort_key_value)}"

        params = self._base_params(request)
        params["KeyConditionExpression"] = key_condition

        filter_expression = builder.filter_expression(request.filters)
        if filter_expression:
            params["FilterExpression"] = filter_expression

        projection = builder.projection(request.projection_attributes)
        if projection:
            params["ProjectionExpression"] = projection

        if request.sort_key and request.sort_key in request.order_by:
            params["ScanIndexForward"] = request.order_by[request.sort_key] == SortDirection.ASC

        return builder.apply(params)

    def build_scan_params(self, request: AccessRequest) -> Dict[str, Any]:
        builder = ExpressionBuilder()
        filters: Dict[str, Predicate] = {}
        # A forced scan still honors the key values as plain filters
        if request.partition_key and request.has_partition_key_value:
            filters[request.partition_key] = Predicate.equal(request.partition_key_value)
        if request.has_sort_key_value:
            filters[request.sort_key] = Predicate.equal(request.sort_key_value)
        filters.update(request.filters)

        params = self._base_params(request)
        filter_expression = builder.filter_expression(filters)
        if filter_expression:
            params["FilterExpression"] = filter_expression

        projection = builder.projection(request.projection_attributes)
        if projection:
            params["ProjectionExpression"] = projection

        return builder.apply(params)

    def _base_params(self, request: AccessRequest) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "TableName": request.table_name,
            "Limit": min(request.pagination.page_size, self.settings.max_page_size),
            "ReturnConsumedCapacity": "TOTAL",
        }
        if request.index_name:
            params["IndexName"] = request.index_name
        elif request.consistent_read:
            # Global secondary indexes cannot serve strongly consistent reads
            params["ConsistentRead"] = True

        start_key = decode_cursor(request.pagination.next_token)
        if start_key:
            params["ExclusiveStartKey"] = {
                name: self._serializer.serialize(_to_store_value(value))
                for name, value in start_key.items()
            }
        return params

    @retry_on_exception(
        (ThrottlingError, ServiceUnavailableError),
        config=RetryConfig(max_attempts=2, base_delay=0.05, max_delay=0.5),
        reraise=True
    )
    async def _call(self, operation: str, table_name: str, params: Dict[str, Any]) -> Dict[str, Any]:
        client = self._get_client()
        try:
            return await asyncio.to_thread(getattr(client, operation), **params)
        except ClientError as e:
            raise self._map_client_error(e, table_name) from e
        except BotoCoreError as e:
            self.logger.error("DynamoDB transport error", operation=operation, error=str(e))
            raise ServiceUnavailableError(
                "DynamoDB is unreachable",
                retry_after=1.0,
                details={"operation": operation, "error": str(e)}
            ) from e

    def _map_client_error(self, error: ClientError, table_name: str) -> Exception:
        code = error.response.get("Error", {}).get("Code", "")
        message = error.response.get("Error", {}).get("Message", str(error))
        self.logger.warning("DynamoDB request failed", table_name=table_name, code=code, message=message)

        if code == "ResourceNotFoundException":
            return ResourceNotFoundError(table_name, f"Table '{table_name}' not found")
        if code in THROTTLING_CODES:
            return ThrottlingError(message, retry_after=1.0, details={"code": code})
        if code == "ValidationException":
            return ValidationError(message, field_errors=[FieldError(field="request", message=message, code=code)])
        return ServiceUnavailableError(message, retry_after=1.0, details={"code": code})

    def _to_page(self, response: Dict[str, Any]) -> StorePage:
        items = [
            {name: _from_store_value(self._deserializer.deserialize(value)) for name, value in item.items()}
            for item in response.get("Items", [])
        ]
        last_key = response.get("LastEvaluatedKey")
        if last_key:
            last_key = {
                name: _from_store_value(self._deserializer.deserialize(value))
                for name, value in last_key.items()
            }
        consumed = response.get("ConsumedCapacity") or {}
        return StorePage(
            items=items,
            last_evaluated_key=last_key or None,
            scanned_count=response.get("ScannedCount", len(items)),
            count=response.get("Count", len(items)),
            consumed_capacity=consumed.get("CapacityUnits")
        )

    async def close(self):
        self._client = None
