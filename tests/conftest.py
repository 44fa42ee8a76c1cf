import copy
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

# Settings are read once at import time; keep these before any sync_worker import.
os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-service-role-key-0123456789abcdef")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SIDE_PIPELINE_MODE", "disabled")
os.environ.setdefault("ENABLE_SCHEDULER", "false")
os.environ.setdefault("ENABLE_BRIEF_SCHEDULER", "false")
os.environ.setdefault("MICROSOFT_CLIENT_ID", "client-id")
os.environ.setdefault("MICROSOFT_CLIENT_SECRET", "client-secret")

import httpx
import pytest
import pytest_asyncio

from sync_worker.models.schemas import Connection
from sync_worker.services.sync import locks


# ============================================================================
# FAKE SUPABASE (PostgREST query builder over in-memory tables)
# ============================================================================

UNIQUE_CONSTRAINTS = {
    "events": [("event_type", "external_id")],
    "sync_state": [("connection_id", "resource_type")],
    "tags": [("name",)],
    "event_tags": [("event_id", "tag_id")],
    "attachments": [("event_id", "filename")],
}


class FakeAPIError(Exception):
    pass


def _lookup(row: Dict[str, Any], column: str) -> Any:
    value: Any = row
    for part in column.split("->"):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class FakeResult:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload: Any = None
        self.filters: List[Callable[[Dict[str, Any]], bool]] = []
        self.order_by: Optional[tuple] = None
        self.row_limit: Optional[int] = None
        self.on_conflict: Optional[str] = None
        self.ignore_duplicates = False

    def select(self, *columns, **kwargs):
        self.op = "select"
        return self

    def insert(self, payload):
        self.op = "insert"
        self.payload = payload
        return self

    def upsert(self, payload, on_conflict=None, ignore_duplicates=False):
        self.op = "upsert"
        self.payload = payload
        self.on_conflict = on_conflict
        self.ignore_duplicates = ignore_duplicates
        return self

    def update(self, fields):
        self.op = "update"
        self.payload = fields
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: _lookup(row, column) == value)
        return self

    def is_(self, column, value):
        expected = None if value in ("null", None) else value
        self.filters.append(lambda row: _lookup(row, column) is expected)
        return self

    def in_(self, column, values):
        self.filters.append(lambda row: _lookup(row, column) in values)
        return self

    def gte(self, column, value):
        self.filters.append(lambda row: _lookup(row, column) is not None and str(_lookup(row, column)) >= str(value))
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def limit(self, count):
        self.row_limit = count
        return self

    def execute(self):
        return self.db._execute(self)


class FakeBucket:
    def __init__(self, db: "FakeSupabase", bucket: str):
        self.db = db
        self.bucket = bucket

    def upload(self, path, file, file_options=None):
        self.db._maybe_fail("storage", "upload")
        self.db.files[(self.bucket, path)] = file
        return {"Key": f"{self.bucket}/{path}"}


class FakeStorage:
    def __init__(self, db: "FakeSupabase"):
        self.db = db

    def from_(self, bucket: str) -> FakeBucket:
        return FakeBucket(self.db, bucket)


class FakeSupabase:
    """Enough of supabase.Client for the sync worker, with unique constraints enforced."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.files: Dict[tuple, bytes] = {}
        self.calls: List[tuple] = []
        self.storage = FakeStorage(self)
        self._failures: List[dict] = []

    # -- test helpers --------------------------------------------------------

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def seed(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(row)
        row.setdefault("id", str(uuid.uuid4()))
        self.rows(table).append(row)
        return row

    def fail(self, table: str, op: str, exc: Optional[Exception] = None, times: Optional[int] = 1):
        """Make the next `times` matching operations raise (times=None: always)."""
        self._failures.append({"table": table, "op": op, "exc": exc or FakeAPIError(f"{op} on {table} failed"), "times": times})

    def count(self, table: str, op: str) -> int:
        return sum(1 for call in self.calls if call == (table, op))

    # -- client surface ------------------------------------------------------

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def _maybe_fail(self, table: str, op: str):
        for failure in self._failures:
            if failure["table"] == table and failure["op"] == op and failure["times"] != 0:
                if failure["times"] is not None:
                    failure["times"] -= 1
                raise failure["exc"]

    def _conflicting_row(self, table: str, row: Dict[str, Any], columns) -> Optional[Dict[str, Any]]:
        values = [row.get(c) for c in columns]
        if any(v is None for v in values):
            return None
        for existing in self.rows(table):
            if [existing.get(c) for c in columns] == values:
                return existing
        return None

    def _insert_row(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        for columns in UNIQUE_CONSTRAINTS.get(table, []):
            if self._conflicting_row(table, row, columns):
                raise FakeAPIError(f'duplicate key value violates unique constraint on {table} {columns}')
        stored = copy.deepcopy(row)
        stored.setdefault("id", str(uuid.uuid4()))
        self.rows(table).append(stored)
        return stored

    def _matching(self, query: FakeQuery) -> List[Dict[str, Any]]:
        return [row for row in self.rows(query.table) if all(f(row) for f in query.filters)]

    def _execute(self, query: FakeQuery) -> FakeResult:
        self.calls.append((query.table, query.op))
        self._maybe_fail(query.table, query.op)

        if query.op == "select":
            rows = self._matching(query)
            if query.order_by:
                column, desc = query.order_by
                rows = sorted(rows, key=lambda r: (_lookup(r, column) is None, str(_lookup(r, column) or "")), reverse=desc)
            if query.row_limit is not None:
                rows = rows[:query.row_limit]
            return FakeResult(copy.deepcopy(rows))

        if query.op == "insert":
            payload = query.payload if isinstance(query.payload, list) else [query.payload]
            return FakeResult([copy.deepcopy(self._insert_row(query.table, row)) for row in payload])

        if query.op == "upsert":
            payload = query.payload if isinstance(query.payload, list) else [query.payload]
            columns = tuple((query.on_conflict or "id").split(","))
            data = []
            for row in payload:
                existing = self._conflicting_row(query.table, row, columns)
                if existing is None:
                    data.append(copy.deepcopy(self._insert_row(query.table, row)))
                elif not query.ignore_duplicates:
                    existing.update(copy.deepcopy(row))
                    data.append(copy.deepcopy(existing))
            return FakeResult(data)

        if query.op == "update":
            rows = self._matching(query)
            for row in rows:
                row.update(copy.deepcopy(query.payload))
            return FakeResult(copy.deepcopy(rows))

        if query.op == "delete":
            rows = self._matching(query)
            self.tables[query.table] = [r for r in self.rows(query.table) if r not in rows]
            return FakeResult(copy.deepcopy(rows))

        raise AssertionError(f"unsupported op {query.op}")


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


# ============================================================================
# FAKE REDIS (just the lease commands)
# ============================================================================

class FakeRedis:
    def __init__(self):
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}

    def set(self, key, value, nx=False, px=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        if px is not None:
            self.ttls[key] = px
        return True

    def get(self, key):
        return self.store.get(key)

    def expire_now(self, key):
        self.store.pop(key, None)
        self.ttls.pop(key, None)

    def eval(self, script, numkeys, key, token, *args):
        if self.store.get(key) != token:
            return 0
        if script == locks.RELEASE_SCRIPT:
            self.expire_now(key)
            return 1
        if script == locks.HEARTBEAT_SCRIPT:
            self.ttls[key] = int(args[0])
            return 1
        raise AssertionError("unknown script")


@pytest.fixture
def fake_redis():
    return FakeRedis()


# ============================================================================
# MICROSOFT GRAPH STUB
# ============================================================================

class GraphStub:
    """
    Routes requests by URL fragment (first match wins). Each route holds a
    queue of responses; the last one repeats. A response is a dict (200 JSON),
    an httpx.Response, or an exception class/instance to raise.
    """

    def __init__(self):
        self.routes: List[tuple] = []
        self.requests: List[httpx.Request] = []

    def add(self, fragment: str, *responses):
        self.routes.append((fragment, list(responses)))
        return self

    def requests_to(self, fragment: str) -> List[httpx.Request]:
        return [r for r in self.requests if fragment in str(r.url)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        for fragment, queue in self.routes:
            if fragment in url:
                response = queue.pop(0) if len(queue) > 1 else queue[0]
                if isinstance(response, type) and issubclass(response, Exception):
                    raise response("stubbed failure", request=request)
                if isinstance(response, Exception):
                    raise response
                if isinstance(response, httpx.Response):
                    return response
                return httpx.Response(200, json=response)
        return httpx.Response(404, json={"error": {"code": "ResourceNotFound", "message": f"no stub for {url}"}})


@pytest.fixture
def graph():
    return GraphStub()


@pytest_asyncio.fixture
async def http_client(graph):
    client = httpx.AsyncClient(transport=httpx.MockTransport(graph.handler))
    yield client
    await client.aclose()


# ============================================================================
# CONNECTIONS
# ============================================================================

@pytest.fixture
def connection(fake_supabase) -> Connection:
    row = fake_supabase.seed("integration_connections", {
        "id": "conn-1",
        "provider_key": "microsoft",
        "status": "connected",
        "account_email": "me@contoso.com",
        "user_id": "user-1",
        "config": {},
    })
    return Connection.model_validate(row)


@pytest.fixture
def now() -> datetime:
    return datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
