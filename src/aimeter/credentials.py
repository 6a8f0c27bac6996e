"""Atomic read-merge-write of JSON credential files."""

from __future__ import annotations

import json
import os
import re
import stat
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from aimeter.errors import CredentialUpdateError, PersistenceError

Mutator = Callable[[dict[str, Any]], None]

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def update_json_credentials(path: Path | str, mutate: Mutator) -> None:
    """Apply *mutate* to the JSON object stored at *path*.

    Keys the mutator does not touch are written back unchanged. The new
    content lands in a temporary file beside *path* which is then renamed
    over it, so a failure at any step leaves the original file intact.
    """
    path = Path(path)
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
    except OSError as exc:
        raise CredentialUpdateError(f"failed to stat credentials file {path}: {exc}") from exc

    try:
        data = path.read_bytes()
    except OSError as exc:
        raise CredentialUpdateError(f"failed to read credentials file {path}: {exc}") from exc

    try:
        raw = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise CredentialUpdateError(f"failed to parse credentials file {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise CredentialUpdateError(f"failed to parse credentials file {path}: not a JSON object")

    try:
        mutate(raw)
    except PersistenceError:
        raise
    except (KeyError, TypeError, ValueError) as exc:
        raise CredentialUpdateError(f"failed to update credentials file {path}: {exc}") from exc

    try:
        encoded = json.dumps(raw, indent=2).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise CredentialUpdateError(f"failed to encode credentials file {path}: {exc}") from exc

    try:
        write_file_atomic(path, encoded, mode)
    except OSError as exc:
        raise CredentialUpdateError(f"failed to write credentials file {path}: {exc}") from exc


def write_file_atomic(path: Path, data: bytes, mode: int) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=".tmp-cred-", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def format_credential_time(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_credential_time(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    text = _FRACTION_RE.sub(r"\1", value.strip()).replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def millis_to_datetime(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return None
    try:
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
