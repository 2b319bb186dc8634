import importlib.util
from datetime import timedelta

from vaultsync.config import reset_settings_cache
from vaultsync.service.audit import AuditSink
from vaultsync.storage.memory import MemoryStore
from vaultsync.storage.models import utcnow

from conftest import ROOT


def _load_script():
    spec = importlib.util.spec_from_file_location(
        "purge_audit_log", ROOT / "scripts" / "purge_audit_log.py"
    )
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _seed(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    sink = AuditSink(store)
    old = sink.log("user.login", user_id="u1")
    old.created_at = utcnow() - timedelta(days=40)
    sink.log("user.login", user_id="u1")
    store.close()


def test_purge_removes_old_entries(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_settings_cache()
    _seed(tmp_path)

    result = _load_script().purge(days=30)

    assert result["purged"] == 1
    assert result["retention_days"] == 30
    assert MemoryStore(fs_root=str(tmp_path)).list_audit_logs("u1")[1] == 1


def test_dry_run_keeps_entries(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_settings_cache()
    _seed(tmp_path)

    result = _load_script().purge(days=30, dry_run=True)

    assert result["purged"] == 0
    assert MemoryStore(fs_root=str(tmp_path)).list_audit_logs("u1")[1] == 2
