import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ontology_engine.backends import EngineBackend, create_memory_backend
from ontology_engine.config import EngineSettings
from ontology_engine.db.memory import InMemoryDatabase
from ontology_engine.models import OntologyWorkflow


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def database(clock: FakeClock) -> InMemoryDatabase:
    return InMemoryDatabase(clock=clock)


@pytest.fixture
def backend(database: InMemoryDatabase) -> EngineBackend:
    settings = EngineSettings(server_instance_id="srv_test", heartbeat_interval_seconds=30)
    return create_memory_backend(settings, database=database)


@pytest.fixture
def provider(backend: EngineBackend):
    return backend.scope_provider


@pytest.fixture
def repo(backend: EngineBackend):
    return backend.workflows


@pytest.fixture
def seed_workflow(provider, repo, clock: FakeClock):
    def _seed(project_id: str = "prj_a", **fields) -> OntologyWorkflow:
        with provider.scope(project_id) as scope:
            created = repo.create(workflow=OntologyWorkflow(project_id=project_id, **fields), scope=scope)
        # distinct created_at per seeded row keeps "latest" lookups deterministic
        clock.advance(1)
        return created

    return _seed


class FakeDriverError(Exception):
    pass


class FakeOperationalError(FakeDriverError):
    pass


class FakeQueryCanceled(FakeOperationalError):
    pass


class FakeInsufficientPrivilege(FakeDriverError):
    pass


class FakeCursor:
    def __init__(self, conn: "FakeConnection") -> None:
        self._conn = conn
        self._rows: list[tuple] = []
        self.rowcount = -1

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query: str, params=None):
        normalized = " ".join(query.strip().split())
        self._conn.statements.append((normalized, params))
        if self._conn.fail_with is not None and "set_config" not in normalized:
            raise self._conn.fail_with
        if "set_config" in normalized:
            self._rows, self.rowcount = [("",)], 1
            return
        rows, rowcount = self._conn.results.pop(0) if self._conn.results else ([], 0)
        self._rows = list(rows)
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeTransaction:
    def __init__(self, conn: "FakeConnection") -> None:
        self._conn = conn

    def __enter__(self):
        self._conn.events.append("begin")
        return self

    def __exit__(self, exc_type, exc, tb):
        self._conn.events.append("rollback" if exc_type else "commit")
        return False


class FakeConnection:
    def __init__(self) -> None:
        self.statements: list[tuple[str, object]] = []
        self.results: list[tuple[list[tuple], int]] = []
        self.events: list[str] = []
        self.fail_with: Exception | None = None
        self.closed = False
        self.cancelled = False
        self.committed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return FakeCursor(self)

    def transaction(self):
        return FakeTransaction(self)

    def commit(self):
        self.committed = True

    def close(self):
        self.closed = True

    def cancel(self):
        self.cancelled = True

    def queue(self, rows: list[tuple], rowcount: int | None = None) -> None:
        self.results.append((rows, len(rows) if rowcount is None else rowcount))


class FakePsycopg:
    Error = FakeDriverError
    OperationalError = FakeOperationalError

    class errors:
        QueryCanceled = FakeQueryCanceled
        InsufficientPrivilege = FakeInsufficientPrivilege

    def __init__(self) -> None:
        self.connection = FakeConnection()
        self.connect_calls: list[tuple[str, dict]] = []
        self.connect_error: Exception | None = None

    def connect(self, dsn: str, **kwargs):
        self.connect_calls.append((dsn, kwargs))
        if self.connect_error is not None:
            raise self.connect_error
        return self.connection


@pytest.fixture
def fake_psycopg(monkeypatch: pytest.MonkeyPatch) -> FakePsycopg:
    fake = FakePsycopg()
    monkeypatch.setattr("ontology_engine.db.postgres._import_psycopg", lambda: fake)
    return fake
