# In lambda/ folder

import json
import sys
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

# Add lambda/ directory to Python path
lambda_dir = Path(__file__).parent.parent
sys.path.insert(0, str(lambda_dir))

from estimator_kpi.models import RecordNotFoundError  # noqa: E402


class InMemoryRecordStore:
    """Dict-backed stand-in for the DynamoDB record store functions."""

    def __init__(self):
        self.tables: dict[str, dict[str, dict]] = defaultdict(dict)
        self.writes: list[tuple[str, str]] = []

    def insert_record(self, table, record):
        now = datetime.now(timezone.utc).isoformat()
        row = _plain(record)
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", now)
        row["updated_at"] = now
        self.tables[table][row["id"]] = row
        self.writes.append(("insert", table))
        return dict(row)

    def get_record(self, table, record_id):
        row = self.tables[table].get(record_id)
        return dict(row) if row is not None else None

    def update_record(self, table, record_id, fields):
        if record_id not in self.tables[table]:
            raise RecordNotFoundError(f"{table} record {record_id} not found")
        row = self.tables[table][record_id]
        row.update(_plain(fields))
        row["updated_at"] = datetime.now(timezone.utc).isoformat()
        self.writes.append(("update", table))
        return dict(row)

    def query_records(self, table, filters=None, order_by=None, descending=False, limit=None):
        filters = _plain(filters or {})
        rows = [
            dict(row) for row in self.tables[table].values()
            if all(row.get(k) == v for k, v in filters.items())
        ]
        if order_by:
            present = [r for r in rows if r.get(order_by) is not None]
            missing = [r for r in rows if r.get(order_by) is None]
            rows = sorted(present, key=lambda r: r[order_by], reverse=descending) + missing
        return rows[:limit] if limit is not None else rows

    def seed(self, table, row):
        """Stores a row without recording a write."""
        row = _plain(row)
        self.tables[table][row["id"]] = row
        return row


def _plain(data):
    return json.loads(json.dumps(data, default=lambda v: v.isoformat()))


@pytest.fixture
def memory_store():
    store = InMemoryRecordStore()
    with patch.multiple(
        "estimator_kpi.workflow",
        insert_record=store.insert_record,
        get_record=store.get_record,
        update_record=store.update_record,
        query_records=store.query_records,
    ):
        yield store
