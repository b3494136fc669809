import os

os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import copy
import threading
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from kidfun.core.notifications import ChangeNotifier, get_notifier
from kidfun.database.supabase_client import get_supabase
from kidfun.modules.auth.service import clear_auth_cache
from kidfun.modules.coordination.service import CoordinationThreadManager

TABLE_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "coordination_threads": {
        "status": "idea",
        "scheduled_date": None,
        "provider_id": None,
        "provider_name": None,
        "provider_url": None,
        "location": None,
        "notes": None,
    },
    "thread_participants": {
        "role": "invited",
        "rsvp_status": "pending",
        "children_bringing": [],
        "responded_at": None,
    },
    "thread_time_proposals": {"status": "proposed", "notes": None},
    "thread_events": {"payload": {}},
    "profiles": {"first_name": None, "last_name": None, "email": None},
}

UNIQUE_KEYS: Dict[str, Tuple[str, ...]] = {
    "thread_participants": ("thread_id", "user_id"),
    "profiles": ("user_id",),
}

USERS = {
    "u1": ("ava@mailbox.org", "Ava", "Adams"),
    "u2": ("ben@mailbox.org", "Ben", "Brown"),
    "u3": ("cara@mailbox.org", "Cara", "Cole"),
    "u4": ("dev@mailbox.org", None, None),
}


class FakeAPIError(Exception):
    pass


class FakeResponse:
    def __init__(self, data: Any) -> None:
        self.data = data


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str) -> None:
        self.db = db
        self.table = table
        self.op = "select"
        self.payload: Any = None
        self.columns = "*"
        self.filters: List[Callable[[dict], bool]] = []
        self.order_by: Optional[Tuple[str, bool]] = None
        self.row_limit: Optional[int] = None
        self.row_offset = 0
        self.single_mode: Optional[str] = None

    def select(self, columns: str = "*") -> "FakeQuery":
        self.columns = columns
        return self

    def insert(self, payload: Any) -> "FakeQuery":
        self.op = "insert"
        self.payload = payload
        return self

    def update(self, payload: dict) -> "FakeQuery":
        self.op = "update"
        self.payload = payload
        return self

    def delete(self) -> "FakeQuery":
        self.op = "delete"
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda r: r.get(column) == value)
        return self

    def neq(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append(lambda r: r.get(column) != value)
        return self

    def in_(self, column: str, values: Any) -> "FakeQuery":
        allowed = list(values)
        self.filters.append(lambda r: r.get(column) in allowed)
        return self

    def is_(self, column: str, value: Any) -> "FakeQuery":
        expected = None if value in (None, "null") else value
        self.filters.append(lambda r: r.get(column) is expected)
        return self

    def order(self, column: str, desc: bool = False) -> "FakeQuery":
        self.order_by = (column, desc)
        return self

    def limit(self, count: int) -> "FakeQuery":
        self.row_limit = count
        return self

    def offset(self, count: int) -> "FakeQuery":
        self.row_offset = count
        return self

    def single(self) -> "FakeQuery":
        self.single_mode = "single"
        return self

    def maybe_single(self) -> "FakeQuery":
        self.single_mode = "maybe"
        return self

    def _matches(self, row: dict) -> bool:
        return all(f(row) for f in self.filters)

    def _project(self, row: dict) -> dict:
        if self.columns.strip() == "*":
            return copy.deepcopy(row)
        names = [c.strip() for c in self.columns.split(",")]
        return {n: copy.deepcopy(row.get(n)) for n in names}

    def execute(self) -> Optional[FakeResponse]:
        self.db._before_execute(self)
        with self.db.lock:
            self.db.calls.append((self.table, self.op))
            self.db._maybe_fail(self.table, self.op)
            rows = self.db.tables.setdefault(self.table, [])
            if self.op == "insert":
                return FakeResponse(self._insert(rows))
            matched = [r for r in rows if self._matches(r)]
            if self.op == "update":
                for r in matched:
                    r.update(copy.deepcopy(self.payload))
                return FakeResponse([copy.deepcopy(r) for r in matched])
            if self.op == "delete":
                self.db.tables[self.table] = [r for r in rows if not self._matches(r)]
                return FakeResponse([copy.deepcopy(r) for r in matched])

            if self.order_by:
                column, desc = self.order_by
                matched = sorted(matched, key=lambda r: r.get(column) or "", reverse=desc)
            matched = matched[self.row_offset:]
            if self.row_limit is not None:
                matched = matched[:self.row_limit]
            data = [self._project(r) for r in matched]
            if self.single_mode == "single":
                if len(data) != 1:
                    raise FakeAPIError("JSON object requested, multiple (or no) rows returned")
                return FakeResponse(data[0])
            if self.single_mode == "maybe":
                if len(data) > 1:
                    raise FakeAPIError("multiple rows returned")
                return FakeResponse(data[0] if data else None)
            return FakeResponse(data)

    def _insert(self, rows: List[dict]) -> List[dict]:
        items = self.payload if isinstance(self.payload, list) else [self.payload]
        created = []
        for item in items:
            row = copy.deepcopy(TABLE_DEFAULTS.get(self.table, {}))
            row.update(copy.deepcopy(item))
            row.setdefault("id", str(uuid.uuid4()))
            stamp = self.db.next_timestamp()
            row.setdefault("created_at", stamp)
            if self.table == "coordination_threads":
                row.setdefault("updated_at", stamp)
            keys = UNIQUE_KEYS.get(self.table)
            if keys and any(all(r.get(k) == row.get(k) for k in keys) for r in rows + created):
                raise FakeAPIError(f"duplicate key value violates unique constraint on {self.table}")
            created.append(row)
        rows.extend(created)
        return [copy.deepcopy(r) for r in created]


class FakeAuth:
    def __init__(self) -> None:
        self.tokens: Dict[str, SimpleNamespace] = {}
        self.signed_out = 0

    def add_user(self, user_id: str, email: str) -> None:
        self.tokens[f"token-{user_id}"] = SimpleNamespace(
            id=user_id, email=email, user_metadata={}, app_metadata={}
        )

    def get_user(self, jwt: Optional[str] = None) -> SimpleNamespace:
        user = self.tokens.get(jwt or "")
        if user is None:
            raise FakeAPIError("invalid JWT: unable to parse or verify signature")
        return SimpleNamespace(user=user)

    def sign_in_with_password(self, credentials: dict) -> SimpleNamespace:
        for token, user in self.tokens.items():
            if user.email == credentials["email"] and credentials["password"] == "secret-pass":
                return SimpleNamespace(user=user, session=SimpleNamespace(access_token=token))
        raise FakeAPIError("Invalid login credentials")

    def sign_up(self, payload: dict) -> SimpleNamespace:
        if any(u.email == payload["email"] for u in self.tokens.values()):
            raise FakeAPIError("User already registered")
        user_id = str(uuid.uuid4())
        self.add_user(user_id, payload["email"])
        return SimpleNamespace(user=self.tokens[f"token-{user_id}"])

    def sign_out(self) -> None:
        self.signed_out += 1


class FakeSupabase:
    """In-memory stand-in for supabase.Client covering the query builder calls the app makes."""

    def __init__(self) -> None:
        self.tables: Dict[str, List[dict]] = {name: [] for name in TABLE_DEFAULTS}
        self.calls: List[Tuple[str, str]] = []
        self.lock = threading.RLock()
        self.auth = FakeAuth()
        self.hooks: List[Callable[[FakeQuery], None]] = []
        self._failures: Dict[Tuple[str, str], int] = {}
        self._clock = datetime.now(timezone.utc)

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def next_timestamp(self) -> str:
        self._clock = max(datetime.now(timezone.utc), self._clock + timedelta(microseconds=1))
        return self._clock.isoformat()

    def fail(self, table: str, op: str, times: int = 1) -> None:
        self._failures[(table, op)] = times

    def _maybe_fail(self, table: str, op: str) -> None:
        remaining = self._failures.get((table, op), 0)
        if remaining:
            self._failures[(table, op)] = remaining - 1
            raise FakeAPIError(f"simulated failure on {op} {table}")

    def _before_execute(self, query: FakeQuery) -> None:
        for hook in list(self.hooks):
            hook(query)

    def rows(self, table: str, **filters: Any) -> List[dict]:
        return [
            copy.deepcopy(r) for r in self.tables.get(table, [])
            if all(r.get(k) == v for k, v in filters.items())
        ]

    def seed_users(self) -> None:
        for user_id, (email, first, last) in USERS.items():
            self.auth.add_user(user_id, email)
            if first is not None:
                self.tables.setdefault("profiles", []).append({
                    "id": str(uuid.uuid4()),
                    "user_id": user_id,
                    "first_name": first,
                    "last_name": last,
                    "email": email,
                    "created_at": self.next_timestamp(),
                    "updated_at": None,
                })


@pytest.fixture(autouse=True)
def _clear_auth_cache() -> Generator[None, None, None]:
    clear_auth_cache()
    yield
    clear_auth_cache()


@pytest.fixture
def fake_db() -> FakeSupabase:
    db = FakeSupabase()
    db.seed_users()
    return db


@pytest.fixture
def notifier() -> ChangeNotifier:
    return ChangeNotifier()


@pytest.fixture
def manager(fake_db: FakeSupabase, notifier: ChangeNotifier) -> CoordinationThreadManager:
    return CoordinationThreadManager(fake_db, notifier)


@pytest.fixture
def future_date() -> datetime:
    return (datetime.now(timezone.utc) + timedelta(days=3)).replace(microsecond=0)


@pytest.fixture
def client(fake_db: FakeSupabase, notifier: ChangeNotifier) -> Generator[TestClient, None, None]:
    from kidfun.main import app

    app.dependency_overrides[get_supabase] = lambda: fake_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> Callable[[str], Dict[str, str]]:
    def _headers(user_id: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer token-{user_id}"}

    return _headers
