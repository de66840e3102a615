import pytest
import httpx

from api.config import Settings as ApiSettings, settings as api_settings
from collector.config import Settings, settings
from collector.errors import PersistenceError


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch):
    """Run every test on defaults and process env only, whatever .env holds."""
    for instance, cls in ((settings, Settings), (api_settings, ApiSettings)):
        clean = cls(_env_file=None)
        for name in cls.model_fields:
            monkeypatch.setattr(instance, name, getattr(clean, name))


class FakeStore:
    """In-memory stand-in for SupabaseStore.

    Upserted rows are kept per table and keyed on the ``on_conflict`` columns,
    so writing the same natural key twice keeps a single row.
    """

    def __init__(self):
        self.tables = {}
        self.upserts = []
        self.tokens = []
        self.offpeak = {}
        self.contracts = {}
        self.fail_upserts = False
        self.fail_insert = False
        self._next_id = 1

    def rows(self, table):
        return list(self.tables.get(table, {}).values())

    async def upsert(self, table, rows, on_conflict):
        if self.fail_upserts:
            raise PersistenceError("duplicate key value", details="Key (prm)", hint="check constraint", code="23505")
        keys = on_conflict.split(",")
        bucket = self.tables.setdefault(table, {})
        for row in rows:
            bucket[tuple(row.get(k) for k in keys)] = dict(row)
        self.upserts.append((table, len(rows), on_conflict))
        return len(rows)

    async def get_active_credential(self):
        active = [row for row in self.tokens if row["is_active"]]
        if not active:
            return None
        return max(active, key=lambda row: row["created_at"])

    async def deactivate_credentials(self):
        for row in self.tokens:
            row["is_active"] = False

    async def insert_credential(self, row):
        if self.fail_insert:
            raise PersistenceError("insert failed", code="42501")
        self.tokens.append(dict(row, id=self._next_id))
        self._next_id += 1

    async def prune_credentials(self, keep=5):
        ordered = sorted(self.tokens, key=lambda row: row["created_at"], reverse=True)
        stale = ordered[keep:]
        self.tokens = ordered[:keep]
        return len(stale)

    async def get_offpeak_windows(self, prm):
        return self.offpeak.get(prm, [])

    async def get_contract(self, prm):
        return self.contracts.get(prm)

    async def get_interval_samples(self, prm, start, end):
        rows = [
            row for row in self.rows("load_curve_data")
            if row["prm"] == prm and start <= row["date"] <= end and row.get("value") is not None
        ]
        return sorted(rows, key=lambda row: row["date_time"])

    def add_interval(self, prm, day, time, value, date_time=None):
        self.tables.setdefault("load_curve_data", {})[(prm, date_time or f"{day}T{time}")] = {
            "prm": prm,
            "date": day,
            "time": time,
            "date_time": date_time or f"{day}T{time}",
            "value": value,
        }


class SleepRecorder:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.calls = []

    async def __call__(self, delay):
        self.calls.append(delay)


class FakeTokens:
    """TokenSupplier stand-in handing out a fixed token."""

    def __init__(self, token="test-token"):
        self.token = token
        self.calls = 0

    async def get_token(self):
        self.calls += 1
        return self.token

    async def close(self):
        pass


def mock_client(handler):
    """AsyncClient whose requests are answered by ``handler(request)``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def tokens():
    return FakeTokens()
