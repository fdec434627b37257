from __future__ import annotations

import json
import zipfile
from pathlib import Path

import pytest

from returns_intake.cli.main import main

from conftest import make_image_bytes


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    (tmp_path / "README.md").write_text("test marker", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("RETURNS_STORAGE_BACKEND", "local")
    monkeypatch.setenv("RETURNS_STORAGE_DIR", str(tmp_path / "storage"))
    monkeypatch.delenv("RETURNS_PUBLIC_BASE_URL", raising=False)
    monkeypatch.delenv("RETURNS_REQUIRE_TEAM_AND_ACTION", raising=False)
    monkeypatch.delenv("RETURNS_DB_PATH", raising=False)
    monkeypatch.delenv("RETURNS_CAPTURE_SIZE", raising=False)
    return tmp_path


def _json_out(capsys: pytest.CaptureFixture[str]) -> dict:
    return json.loads(capsys.readouterr().out)


def test_init_db_and_check_id(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    db = workspace / "records.sqlite3"
    assert main(["--db", str(db), "init-db"]) == 0
    assert db.exists()
    capsys.readouterr()

    assert main(["check-id", "ISBN 978-0-306-40615-7"]) == 0
    assert _json_out(capsys) == {"identifier": "9780306406157"}
    assert main(["check-id", "nothing"]) == 1


def test_normalize_writes_square_jpeg(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    src = workspace / "photo.jpg"
    src.write_bytes(make_image_bytes((640, 480)))
    assert main(["normalize", "--image", str(src), "--tag", "0306406152", "--output-dir", "out", "--size", "32"]) == 0
    written = Path(capsys.readouterr().out.strip())
    assert written.parent == workspace / "out"
    assert written.name.startswith("0306406152_")
    assert written.read_bytes()[:2] == b"\xff\xd8"


def test_submit_update_list_show_export(workspace: Path, capsys: pytest.CaptureFixture[str]) -> None:
    db = str(workspace / "records.sqlite3")
    photo = workspace / "photo.jpg"
    photo.write_bytes(make_image_bytes())

    code = main(
        [
            "--db", db, "submit",
            "--invoice", "12345678",
            "--account", "abc123",
            "--returns", "87654321",
            "--reason", "dented",
            "--image", str(photo),
            "--tag", "9780306406157",
            "--placeholder", "1",
        ]
    )
    assert code == 0
    record = _json_out(capsys)
    assert record["accountNumber"] == "ABC123"
    assert len(record["images"]) == 2
    assert all(ref.startswith("file://") for ref in record["images"])

    assert main(["--db", db, "update", "12345678", "--team", "Team A", "--status", "Assessed"]) == 0
    assert _json_out(capsys)["team"] == "Team A"

    assert main(["--db", db, "update", "12345678", "--status", "Completed", "--require-team-and-action"]) == 2
    capsys.readouterr()

    assert main(["--db", db, "list", "--assessed", "Assessed"]) == 0
    listing = _json_out(capsys)
    assert listing["total"] == 1

    assert main(["--db", db, "show", "12345678"]) == 0
    assert _json_out(capsys)["status"] == "Assessed"
    assert main(["--db", db, "show", "99999999"]) == 1
    capsys.readouterr()

    archive = workspace / "export.zip"
    assert main(["--db", db, "export-images", "12345678", "--output", str(archive)]) == 0
    with zipfile.ZipFile(archive) as zf:
        assert zf.namelist() == ["ABC123-12345678-1.jpg", "ABC123-12345678-2.jpg"]


def test_submit_with_invalid_form_exits_with_validation_code(workspace: Path) -> None:
    photo = workspace / "photo.jpg"
    photo.write_bytes(make_image_bytes())
    code = main(
        [
            "--db", str(workspace / "records.sqlite3"), "submit",
            "--variant", "damages",
            "--invoice", "123",
            "--account", "ABC123",
            "--image", str(photo),
            "--tag", "0306406152",
        ]
    )
    assert code == 2
