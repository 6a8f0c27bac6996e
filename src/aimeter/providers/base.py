from __future__ import annotations

import json
import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from aimeter.credentials import Mutator, update_json_credentials
from aimeter.errors import APIStatusError, PersistenceError, ReauthRequiredError, RefreshError, ResponseDecodeError
from aimeter.http import QuotaHTTP, debug_body, truncate_body
from aimeter.models import Account, CredentialSource, ProviderName, UsageRow
from aimeter.source import proxy_dir

logger = logging.getLogger(__name__)

NATIVE_IDENTITY = "native"

ACCESS_TOKEN_KEYS = ("access_token", "accessToken", "token")
REFRESH_TOKEN_KEYS = ("refresh_token", "refreshToken")
ID_TOKEN_KEYS = ("id_token", "idToken")
EXPIRES_IN_KEYS = ("expires_in", "expiresIn")


class ProviderAdapter(ABC):
    """What the orchestrator needs from a vendor: load, refresh, fetch, parse."""

    name: ProviderName

    @abstractmethod
    def load_accounts(self, home_dir: Path | None, source: CredentialSource) -> list[Account]:
        raise NotImplementedError

    @abstractmethod
    def refresh(self, account: Account, http: QuotaHTTP) -> str:
        raise NotImplementedError

    @abstractmethod
    def fetch_quota(self, account: Account, token: str, http: QuotaHTTP) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def parse_usage(self, payload: dict[str, Any], account: Account) -> list[UsageRow]:
        raise NotImplementedError

    @abstractmethod
    def missing_credentials_message(self, source: CredentialSource) -> str:
        raise NotImplementedError

    def display_name(self, account: Account | None = None) -> str:
        label = account.identity.strip() if account else ""
        if not label:
            return self.name.display
        return f"{self.name.display} ({label})"


def glob_proxy_files(home_dir: Path, *patterns: str) -> list[Path]:
    directory = proxy_dir(home_dir)
    found: set[Path] = set()
    for pattern in patterns:
        try:
            found.update(p for p in directory.glob(pattern) if p.is_file())
        except OSError as exc:
            logger.debug("failed to glob %s/%s: %s", directory, pattern, exc)
    return sorted(found)


def read_json_object(path: Path) -> dict[str, Any]:
    """Read *path* as a JSON object; ``ValueError`` carries the load-error text."""
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise ValueError(f"failed to read file: {exc}") from exc
    try:
        raw = json.loads(data.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValueError(f"failed to parse JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError("failed to parse JSON: expected an object")
    return raw


def read_native_json(path: Path) -> tuple[dict[str, Any] | None, str]:
    """Return ``(raw, load_error)``; ``(None, "")`` when the file is absent."""
    try:
        data = path.read_bytes()
    except OSError:
        return None, ""
    try:
        raw = json.loads(data.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        return None, f"failed to parse {path}: {exc}"
    if not isinstance(raw, dict):
        return None, f"failed to parse {path}: expected an object"
    return raw, ""


def native_failure(path: Path, load_error: str) -> Account:
    return Account(identity=NATIVE_IDENTITY, source_path=path, is_native=True, load_error=load_error)


def short_id(value: str) -> str:
    return value[:6]


def apply_display_names(accounts: list[Account]) -> None:
    """Make identities unique when several files resolve to the same email."""
    counts: dict[str, int] = {}
    has_alt_source: dict[str, bool] = {}
    for account in accounts:
        if not account.email:
            continue
        key = account.email.lower()
        counts[key] = counts.get(key, 0) + 1
        if account.source_name and account.source_name.lower() != key:
            has_alt_source[key] = True

    for account in accounts:
        label = account.email or account.source_name or "unknown"
        key = account.email.lower()
        if key and counts.get(key, 0) > 1:
            if account.source_name and account.source_name.lower() != key:
                label = account.source_name
            elif not has_alt_source.get(key) and account.account_id:
                label = f"{account.email}#{short_id(account.account_id)}"
        account.identity = label


def string_from_map(raw: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def int_from_map(raw: dict[str, Any], *keys: str) -> int:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, float) and not math.isfinite(value):
            continue
        if isinstance(value, (int, float)):
            return int(value)
        if isinstance(value, str):
            try:
                return int(value)
            except ValueError:
                continue
    return 0


def reauth_error(vendor: ProviderName) -> ReauthRequiredError:
    return ReauthRequiredError(f"token expired; re-authenticate with {vendor.value} externally")


def expiry_from_delta(now: datetime, expires_in: int) -> datetime | None:
    if expires_in <= 0:
        return None
    try:
        return now + timedelta(seconds=expires_in)
    except OverflowError:
        return None


def exchange_refresh_token(
    http: QuotaHTTP,
    vendor: ProviderName,
    url: str,
    *,
    json_body: dict[str, str] | None = None,
    form: dict[str, str] | None = None,
) -> dict[str, Any]:
    """POST a refresh grant and return the decoded response object."""
    headers = {"Accept": "application/json"}
    if json_body is not None:
        resp = http.post(url, json=json_body, headers=headers)
    else:
        resp = http.post(url, data=form, headers=headers)

    if not resp.is_success:
        logger.debug("%s: token refresh non-2xx status=%d body=%r", vendor.display, resp.status_code, debug_body(resp.content))
        raise APIStatusError(resp.status_code, truncate_body(resp.content))

    try:
        raw = resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.debug("%s: failed to parse token refresh response: %s body=%r", vendor.display, exc, debug_body(resp.content))
        raise RefreshError(f"failed to parse token refresh response: {exc}") from exc
    if not isinstance(raw, dict):
        raise RefreshError("failed to parse token refresh response: expected an object")
    return raw


def decode_quota_response(vendor: ProviderName, resp) -> dict[str, Any]:
    if not resp.is_success:
        logger.debug("%s: usage API non-2xx status=%d body=%r", vendor.display, resp.status_code, debug_body(resp.content))
        raise APIStatusError(resp.status_code, truncate_body(resp.content))
    try:
        payload = resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ResponseDecodeError(f"failed to parse API response: {exc}") from exc
    if not isinstance(payload, dict):
        raise ResponseDecodeError("failed to parse API response: expected an object")
    return payload


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def persist_refresh(account: Account, mutate: Mutator) -> None:
    if account.source_path is None:
        raise PersistenceError("credential path not available for refresh")
    update_json_credentials(account.source_path, mutate)
