from pathlib import Path
from types import SimpleNamespace
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from shared import db as shared_db
from shared import ratelimit


class FakeQuery:
    """Just enough of the supabase query builder for the app's call chains."""

    def __init__(self, fake, table):
        self.fake = fake
        self.table = table
        self.op = "select"
        self.payload = None
        self.columns = "*"
        self.count_mode = None
        self.on_conflict = None
        self.filters = []
        self.window = None
        self.max_rows = None

    def select(self, columns="*", count=None):
        self.columns = columns
        self.count_mode = count
        return self

    def insert(self, payload):
        self.op = "insert"
        self.payload = payload
        return self

    def upsert(self, payload, on_conflict=None):
        self.op = "upsert"
        self.payload = payload
        self.on_conflict = on_conflict
        return self

    def update(self, payload):
        self.op = "update"
        self.payload = payload
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def is_(self, column, value):
        self.filters.append((column, None if value == "null" else value))
        return self

    def gte(self, column, value):
        return self

    def order(self, column, desc=False):
        return self

    def range(self, start, end):
        self.window = (start, end)
        return self

    def limit(self, n):
        self.max_rows = n
        return self

    def _matches(self, row):
        return all(row.get(col) == value for col, value in self.filters if col in row)

    def execute(self):
        self.fake.calls.append(self)
        error = self.fake.errors.get((self.table, self.op))
        if error:
            raise error

        rows = self.fake.tables.setdefault(self.table, [])
        if self.op in ("insert", "upsert"):
            new_rows = self.payload if isinstance(self.payload, list) else [self.payload]
            stored = []
            for row in new_rows:
                row = dict(row)
                row.setdefault("id", f"{self.table}-{len(rows) + 1}")
                rows.append(row)
                stored.append(row)
            return SimpleNamespace(data=stored, count=None)

        matched = [row for row in rows if self._matches(row)]
        if self.op == "update":
            for row in matched:
                row.update(self.payload)
            return SimpleNamespace(data=matched, count=None)
        if self.op == "delete":
            self.fake.tables[self.table] = [row for row in rows if row not in matched]
            return SimpleNamespace(data=matched, count=None)

        count = self.fake.counts.get(self.table, len(matched)) if self.count_mode else None
        if self.window:
            matched = matched[self.window[0]:self.window[1] + 1]
        if self.max_rows is not None:
            matched = matched[:self.max_rows]
        return SimpleNamespace(data=[dict(row) for row in matched], count=count)


class FakeAdmin:
    def __init__(self):
        self.deleted = []
        self.error = None

    def delete_user(self, user_id):
        if self.error:
            raise self.error
        self.deleted.append(user_id)


class FakeAuth:
    def __init__(self):
        self.tokens = {}
        self.admin = FakeAdmin()

    def get_user(self, token):
        if token not in self.tokens:
            raise Exception("invalid JWT")
        user_id, email = self.tokens[token]
        return SimpleNamespace(user=SimpleNamespace(id=user_id, email=email))


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.counts = {}
        self.errors = {}
        self.calls = []
        self.auth = FakeAuth()

    def table(self, name):
        return FakeQuery(self, name)

    def ops(self, table, op=None):
        return [c for c in self.calls if c.table == table and (op is None or c.op == op)]

    def add_user(self, user_id, email, token=None, **columns):
        row = {"id": user_id, "email": email, "subscription": "trial", "is_admin": False}
        row.update(columns)
        self.tables.setdefault("users", []).append(row)
        if token:
            self.auth.tokens[token] = (user_id, email)
        return row


@pytest.fixture()
def db(monkeypatch):
    fake = FakeSupabase()
    monkeypatch.setattr(shared_db, "_client", fake)
    return fake


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "DISCORD_ANALYSIS_WEBHOOK",
        "DISCORD_LEADS_WEBHOOK",
        "ALLOWED_ORIGINS",
        "ALLOW_WEBHOOK_TEST_BYPASS",
        "ENVIRONMENT",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "STRIPE_LIVE_WEBHOOK_SECRET",
    ):
        monkeypatch.delenv(name, raising=False)
    ratelimit.reset()
    yield
    ratelimit.reset()


@pytest.fixture()
def app(db):
    import main

    main.ANALYSIS_JOBS.clear()
    main.app.config["TESTING"] = True
    yield main.app
    main.ANALYSIS_JOBS.clear()


@pytest.fixture()
def client(app):
    return app.test_client()
