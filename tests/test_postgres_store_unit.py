from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from vaultsync.storage.models import VaultEncryption
from vaultsync.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, row):
        self._row = row
        self.rowcount = 1 if row else 0

    def fetchone(self):
        return self._row


class FakeConnection:
    def __init__(self, rows):
        self.rows = list(rows)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        return FakeCursor(self.rows.pop(0) if self.rows else None)


class FakePool:
    def __init__(self, rows=()):
        self.conn = FakeConnection(rows)

    @contextmanager
    def connection(self):
        yield self.conn


def create_test_store(rows=()) -> PostgresStore:
    """PostgresStore wired to a recording fake pool instead of a database."""
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(rows)
    return store


def _session_row(**overrides):
    row = {
        "id": "6f1c8a52-8a4c-4bb0-9d3e-0d6cb7b0a001",
        "user_id": "6f1c8a52-8a4c-4bb0-9d3e-0d6cb7b0a002",
        "device_id": "6f1c8a52-8a4c-4bb0-9d3e-0d6cb7b0a003",
        "refresh_token_hash": "new-hash",
        "family": "fam",
        "expires_at": NOW + timedelta(days=7),
        "created_at": NOW,
        "last_activity_at": NOW,
    }
    row.update(overrides)
    return row


def test_rotate_refresh_hash_is_conditional_update():
    store = create_test_store([_session_row()])

    sess = store.rotate_refresh_hash("sid", "old-hash", "new-hash", now=NOW)

    sql, params = store.pool.conn.executed[0]
    assert sql.startswith("UPDATE auth_session")
    assert "WHERE id = %s AND refresh_token_hash = %s AND revoked_at IS NULL" in sql
    assert params == ("new-hash", NOW, "sid", "old-hash")
    assert sess.refresh_token_hash == "new-hash"


def test_rotate_refresh_hash_lost_race_returns_none():
    store = create_test_store([])

    assert store.rotate_refresh_hash("sid", "old-hash", "new-hash") is None


def test_vault_update_guards_on_version():
    row = {
        "id": "v1",
        "user_id": "u1",
        "blob": "YmxvYg==",
        "encryption_algorithm": "aes-256-gcm",
        "encryption_iv": "aXY=",
        "encryption_tag": "dGFn",
        "checksum": "c2",
        "version": 4,
        "blob_format_version": 1,
        "last_synced_at": NOW,
        "created_at": NOW,
        "updated_at": NOW,
    }
    store = create_test_store([row])

    vault = store.update_vault_if_version(
        "u1",
        3,
        blob="YmxvYg==",
        encryption=VaultEncryption("aes-256-gcm", "aXY=", "dGFn"),
        checksum="c2",
        blob_format_version=1,
        now=NOW,
    )

    sql, params = store.pool.conn.executed[0]
    assert "version = version + 1" in sql
    assert sql.endswith("WHERE user_id = %s AND version = %s RETURNING *")
    assert params[-2:] == ("u1", 3)
    assert vault.version == 4
    assert vault.encryption.auth_tag == "dGFn"


def test_malformed_session_id_skips_query():
    store = create_test_store()

    assert store.get_session("not-a-uuid") is None
    assert store.pool.conn.executed == []


def _recording_pool(monkeypatch, calls):
    from vaultsync.storage import postgres

    def _pool(dsn, **kwargs):
        calls.append((dsn, kwargs))
        return FakePool([{"oid": "t"}] * len(postgres._REQUIRED_TABLES))

    monkeypatch.setattr(postgres, "ConnectionPool", _pool)


def test_connections_carry_statement_timeout(monkeypatch):
    calls = []
    _recording_pool(monkeypatch, calls)

    PostgresStore("postgresql://db/vaultsync", pool_timeout=2.5, statement_timeout_ms=1500)

    (dsn, kwargs), = calls
    assert dsn == "postgresql://db/vaultsync"
    assert kwargs["timeout"] == 2.5
    assert kwargs["kwargs"]["options"] == "-c statement_timeout=1500"
    assert kwargs["kwargs"]["autocommit"] is False


def test_zero_statement_timeout_leaves_server_default(monkeypatch):
    calls = []
    _recording_pool(monkeypatch, calls)

    PostgresStore("postgresql://db/vaultsync", statement_timeout_ms=0)

    assert "options" not in calls[0][1]["kwargs"]
