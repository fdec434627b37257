from __future__ import annotations

from pathlib import Path

import pytest

from returns_intake.config import (
    load_capture_size,
    load_completion_policy,
    load_db_path,
    load_storage_settings,
    load_upload_limits,
)
from returns_intake.domain.models import DEFAULT_MAX_UPLOAD_BYTES

KEYS = (
    "RETURNS_STORAGE_BACKEND",
    "RETURNS_STORAGE_DIR",
    "RETURNS_PUBLIC_BASE_URL",
    "SUPABASE_URL",
    "SUPABASE_KEY",
    "SUPABASE_BUCKET",
    "RETURNS_MAX_UPLOAD_BYTES",
    "RETURNS_CAPTURE_SIZE",
    "RETURNS_REQUIRE_TEAM_AND_ACTION",
    "RETURNS_DB_PATH",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_live_under_project_var(tmp_path: Path) -> None:
    (tmp_path / "pyproject.toml").write_text("[project]\nname='x'\n", encoding="utf-8")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)

    settings = load_storage_settings(str(nested))
    assert settings.backend == "local"
    assert settings.local_dir == str(tmp_path / "var" / "storage")
    assert load_db_path(str(nested)) == str(tmp_path / "var" / "returnsdb" / "returns.sqlite3")
    assert load_upload_limits(str(nested)).max_bytes == DEFAULT_MAX_UPLOAD_BYTES
    assert load_capture_size(str(nested)) == 720
    assert load_completion_policy(str(nested)) is False


def test_dotenv_values_and_environment_precedence(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / ".env").write_text(
        "\n".join(
            [
                "# storage",
                "RETURNS_STORAGE_BACKEND=supabase",
                "SUPABASE_URL='https://proj.supabase.co'",
                'SUPABASE_KEY="secret"',
                "SUPABASE_BUCKET=returns",
                "RETURNS_MAX_UPLOAD_BYTES=1024",
                "RETURNS_CAPTURE_SIZE=not-a-number",
                "RETURNS_REQUIRE_TEAM_AND_ACTION=yes",
                "; legacy comment",
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("SUPABASE_BUCKET", "override")

    settings = load_storage_settings(str(tmp_path))
    assert settings.backend == "supabase"
    assert settings.supabase_url == "https://proj.supabase.co"
    assert settings.supabase_key == "secret"
    assert settings.bucket == "override"
    assert load_upload_limits(str(tmp_path)).max_bytes == 1024
    assert load_capture_size(str(tmp_path)) == 720
    assert load_completion_policy(str(tmp_path)) is True


def test_unknown_backend_falls_back_to_local(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RETURNS_STORAGE_BACKEND", "s3")
    monkeypatch.setenv("RETURNS_DB_PATH", str(tmp_path / "custom.sqlite3"))
    assert load_storage_settings(str(tmp_path)).backend == "local"
    assert load_db_path(str(tmp_path)) == str(tmp_path / "custom.sqlite3")
