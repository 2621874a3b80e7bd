import os
from pathlib import Path

from mindwell.core.app import settings


def test_resolve_db_path_stable_across_cwd(monkeypatch):
    expected = Path(settings.__file__).resolve().parents[3] / "mindwell.db"
    monkeypatch.delenv("MINDWELL_DB_PATH", raising=False)
    monkeypatch.delenv("DB_PATH", raising=False)
    monkeypatch.chdir(Path(settings.__file__).resolve().parents[1])
    assert Path(settings.resolve_db_path()) == expected


def test_relative_db_path_resolves_against_repo_root(monkeypatch):
    monkeypatch.setenv("MINDWELL_DB_PATH", "data/local.db")
    assert Path(settings.resolve_db_path()) == settings.REPO_ROOT / "data" / "local.db"


def test_load_settings_reads_environment(monkeypatch, tmp_path):
    db_file = tmp_path / "mood.db"
    monkeypatch.setenv("MINDWELL_DB_PATH", str(db_file))
    monkeypatch.setenv("MINDWELL_PBKDF2_ITERATIONS", "2000")
    monkeypatch.setenv("MINDWELL_LOCKOUT_SECONDS", "not-a-number")
    loaded = settings.load_settings()
    assert loaded.database_url == f"sqlite:///{db_file}"
    assert loaded.pbkdf2_iterations == 2000
    assert loaded.lockout_seconds == settings.DEFAULT_LOCKOUT_SECONDS
    assert loaded.window_days == 21


def test_file_backed_database(tmp_path):
    from mindwell.core.app.main import MindWell

    url = f"sqlite:///{tmp_path / 'mindwell.db'}"
    first = MindWell(settings=settings.Settings(database_url=url, pbkdf2_iterations=1000))
    first.create_account("Sunrise2024")
    first.log_mood(3, "persisted", [])
    first.lock()
    first.database.dispose()

    second = MindWell(settings=settings.Settings(database_url=url, pbkdf2_iterations=1000))
    second.unlock("Sunrise2024")
    assert second.get_recent_entries(1)[0].note == "persisted"
    second.database.dispose()
    assert os.path.exists(tmp_path / "mindwell.db")
