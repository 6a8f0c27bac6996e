import json
import os
import stat
from datetime import datetime, timezone
from pathlib import Path

import pytest

from aimeter.credentials import (
    format_credential_time,
    millis_to_datetime,
    parse_credential_time,
    update_json_credentials,
)
from aimeter.errors import CredentialUpdateError
from conftest import write_json


def _temp_files(directory: Path) -> list[Path]:
    return [p for p in directory.iterdir() if p.name.startswith(".tmp-cred-")]


def test_update_preserves_unknown_keys_and_mode(tmp_path: Path) -> None:
    path = write_json(tmp_path / "codex-a.json", {"access_token": "old", "extra": {"nested": [1, 2]}})
    os.chmod(path, 0o600)

    update_json_credentials(path, lambda data: data.update(access_token="new"))

    data = json.loads(path.read_text())
    assert data == {"access_token": "new", "extra": {"nested": [1, 2]}}
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert _temp_files(tmp_path) == []


def test_update_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(CredentialUpdateError):
        update_json_credentials(tmp_path / "absent.json", lambda data: None)


def test_update_invalid_json_leaves_file(tmp_path: Path) -> None:
    path = write_json(tmp_path / "bad.json", "{not json")
    with pytest.raises(CredentialUpdateError):
        update_json_credentials(path, lambda data: None)
    assert path.read_text() == "{not json"


def test_mutator_error_aborts_write(tmp_path: Path) -> None:
    path = write_json(tmp_path / "cred.json", {"access_token": "old"})

    def mutate(data: dict) -> None:
        data["access_token"] = "new"
        raise KeyError("token")

    with pytest.raises(CredentialUpdateError):
        update_json_credentials(path, mutate)
    assert json.loads(path.read_text()) == {"access_token": "old"}


def test_failed_rename_cleans_up_temp_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = write_json(tmp_path / "cred.json", {"access_token": "old"})

    def fail_replace(src, dst):
        raise OSError("read-only file system")

    monkeypatch.setattr("aimeter.credentials.os.replace", fail_replace)
    with pytest.raises(CredentialUpdateError, match="read-only"):
        update_json_credentials(path, lambda data: data.update(access_token="new"))

    assert json.loads(path.read_text()) == {"access_token": "old"}
    assert _temp_files(tmp_path) == []


def test_credential_time_formatting() -> None:
    ts = datetime(2026, 1, 2, 3, 4, 5, 123456, tzinfo=timezone.utc)
    assert format_credential_time(ts) == "2026-01-02T03:04:05.123456Z"
    assert parse_credential_time("2026-01-02T03:04:05.123456789Z") == ts
    assert parse_credential_time("2026-01-02T04:04:05.123456+01:00") == ts
    assert parse_credential_time("yesterday") is None
    assert parse_credential_time("") is None
    assert parse_credential_time(12) is None


def test_millis_to_datetime() -> None:
    assert millis_to_datetime(1_700_000_000_000) == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)
    assert millis_to_datetime(0) is None
    assert millis_to_datetime("1700000000000") is None
