"""
Storage layer - generic DynamoDB record store.

One table per record type (estimates, events, blockers, profiles,
carriers), each keyed by a UUID "id" attribute. Insert, read, partial
update, filtered query, and delete. All database interaction is isolated here.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from functools import reduce
from typing import Any

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from estimator_kpi.models import StorageError, RecordNotFoundError

logger = logging.getLogger("estimator-kpi-storage")


# --- DynamoDB resource cache ---
# Initialized once per Lambda container, reused across invocations.

_dynamodb = None
_tables: dict[str, Any] = {}


def _get_table(name: str):
    """Lazy-initialized DynamoDB table with caching."""
    global _dynamodb

    if name in _tables:
        return _tables[name]

    if _dynamodb is None:
        _dynamodb = boto3.resource("dynamodb")
    _tables[name] = _dynamodb.Table(name)
    return _tables[name]


# --- Public API ---

def insert_record(table: str, record: dict) -> dict:
    """
    Stores a new record and returns the full stored row.

    Assigns id (unless provided), created_at, and updated_at.

    Raises:
        StorageError: If the DynamoDB write fails.
    """
    now = _now_iso()
    item = {**record}
    item.setdefault("id", str(uuid.uuid4()))
    item.setdefault("created_at", now)
    item["updated_at"] = now

    try:
        _get_table(table).put_item(Item=_to_dynamodb(item))
    except Exception as e:
        logger.error(f"Insert into {table} failed: {e}")
        raise StorageError(f"Failed to insert into {table}: {e}")
    return _to_json(item)


def get_record(table: str, record_id: str) -> dict | None:
    """
    Retrieves a record by id.

    Returns None if the record does not exist.

    Raises:
        StorageError: If the DynamoDB read fails.
    """
    try:
        response = _get_table(table).get_item(Key={"id": record_id})
    except Exception as e:
        raise StorageError(f"Failed to retrieve {table} record {record_id}: {e}")

    if "Item" not in response:
        return None
    return _from_dynamodb(response["Item"])


def update_record(table: str, record_id: str, fields: dict) -> dict:
    """
    Partial update by primary key. Returns the full updated row.

    Only the given fields change; updated_at is always refreshed.

    Raises:
        RecordNotFoundError: If no record has this id.
        StorageError: If the DynamoDB update fails.
    """
    fields = {k: v for k, v in _to_json(fields).items() if k != "id"}
    fields["updated_at"] = _now_iso()

    # Placeholders for every name, since "status" is a reserved word
    names = {f"#f{i}": key for i, key in enumerate(fields)}
    values = {f":v{i}": value for i, value in enumerate(fields.values())}
    assignments = ", ".join(f"#f{i} = :v{i}" for i in range(len(fields)))

    try:
        response = _get_table(table).update_item(
            Key={"id": record_id},
            UpdateExpression=f"SET {assignments}",
            ConditionExpression="attribute_exists(id)",
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=_to_dynamodb(values),
            ReturnValues="ALL_NEW",
        )
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
            raise RecordNotFoundError(f"{table} record {record_id} not found")
        logger.error(f"Update of {table} record {record_id} failed: {e}")
        raise StorageError(f"Failed to update {table} record {record_id}: {e}")
    except Exception as e:
        logger.error(f"Update of {table} record {record_id} failed: {e}")
        raise StorageError(f"Failed to update {table} record {record_id}: {e}")

    return _from_dynamodb(response["Attributes"])


def query_records(
    table: str,
    filters: dict | None = None,
    order_by: str | None = None,
    descending: bool = False,
    limit: int | None = None,
) -> list[dict]:
    """
    Returns records matching every equality filter.

    Ordering and limit are applied after the scan. Rows missing the
    order_by attribute sort last.

    Raises:
        StorageError: If the DynamoDB scan fails.
    """
    scan_kwargs: dict[str, Any] = {}
    if filters:
        conditions = [Attr(key).eq(value) for key, value in _to_dynamodb(filters).items()]
        scan_kwargs["FilterExpression"] = reduce(lambda a, b: a & b, conditions)

    items: list[dict] = []
    try:
        table_resource = _get_table(table)
        while True:
            response = table_resource.scan(**scan_kwargs)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            scan_kwargs["ExclusiveStartKey"] = last_key
    except Exception as e:
        raise StorageError(f"Failed to query {table}: {e}")

    records = [_from_dynamodb(item) for item in items]

    if order_by:
        present = [r for r in records if r.get(order_by) is not None]
        missing = [r for r in records if r.get(order_by) is None]
        records = sorted(present, key=lambda r: r[order_by], reverse=descending) + missing

    if limit is not None:
        records = records[:limit]
    return records


def delete_record(table: str, record_id: str) -> None:
    """
    Removes a record. Deleting a missing id is not an error.

    Raises:
        StorageError: If the DynamoDB delete fails.
    """
    try:
        _get_table(table).delete_item(Key={"id": record_id})
    except Exception as e:
        raise StorageError(f"Failed to delete {table} record {record_id}: {e}")


def clear_table_cache() -> None:
    """Clears cached DynamoDB resource and tables. Testing only."""
    global _dynamodb
    _dynamodb = None
    _tables.clear()


# --- Internal ---

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_json(data: dict) -> dict:
    """Enums, datetimes, and dates to their JSON forms."""
    return json.loads(json.dumps(data, default=_json_default))


def _json_default(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def _to_dynamodb(data: dict) -> dict:
    """Convert floats to Decimal for DynamoDB compatibility."""
    return json.loads(json.dumps(data, default=_json_default), parse_float=Decimal)


def _from_dynamodb(item: dict) -> dict:
    """Convert Decimals back to int or float."""
    return {key: _plain(value) for key, value in item.items()}


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value
