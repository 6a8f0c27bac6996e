from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from aimeter.credentials import format_credential_time, parse_credential_time
from aimeter.errors import RefreshError
from aimeter.http import QuotaHTTP
from aimeter.jwt import claim, client_id_and_scopes, extract_explicit_client_id
from aimeter.models import Account, CredentialSource, ProviderName, UsageRow
from aimeter.providers.base import (
    ACCESS_TOKEN_KEYS,
    EXPIRES_IN_KEYS,
    ID_TOKEN_KEYS,
    NATIVE_IDENTITY,
    REFRESH_TOKEN_KEYS,
    ProviderAdapter,
    apply_display_names,
    decode_quota_response,
    exchange_refresh_token,
    expiry_from_delta,
    glob_proxy_files,
    int_from_map,
    native_failure,
    persist_refresh,
    read_json_object,
    read_native_json,
    reauth_error,
    string_from_map,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://chatgpt.com"
USAGE_PATH = "/backend-api/wham/usage"
REFRESH_URL = "https://auth.openai.com/oauth/token"
DEFAULT_CLIENT_ID = "app_EMoamEEZ73f0CkXaXp7hrann"

PROXY_PATTERN = "codex-*.json"
NATIVE_PATH = Path(".codex") / "auth.json"


class CodexAdapter(ProviderAdapter):
    name = ProviderName.CODEX

    def __init__(self, base_url: str | None = None, refresh_url: str | None = None) -> None:
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.refresh_url = refresh_url or REFRESH_URL

    def load_accounts(self, home_dir: Path | None, source: CredentialSource) -> list[Account]:
        if home_dir is None:
            return []
        if source is CredentialSource.NATIVE:
            return self._load_native(home_dir / NATIVE_PATH)

        accounts = [self._load_proxy_file(path) for path in glob_proxy_files(home_dir, PROXY_PATTERN)]
        apply_display_names(accounts)
        return accounts

    def _load_proxy_file(self, path: Path) -> Account:
        source_name = extract_email_from_filename(path.name)
        try:
            raw = read_json_object(path)
        except ValueError as exc:
            return Account(identity=source_name, email=source_name, source_name=source_name, source_path=path, load_error=str(exc))

        access_token = string_from_map(raw, "access_token")
        if not access_token:
            return Account(
                identity=source_name,
                email=source_name,
                source_name=source_name,
                source_path=path,
                load_error="missing access_token",
            )

        id_token = string_from_map(raw, "id_token")
        client_id, scopes = extract_codex_auth_details(access_token, id_token)
        email = string_from_map(raw, "email") or source_name
        return Account(
            identity=email,
            email=email,
            source_name=source_name,
            account_id=string_from_map(raw, "account_id"),
            access_token=access_token,
            id_token=id_token,
            refresh_token=string_from_map(raw, "refresh_token"),
            client_id=client_id,
            scopes=scopes,
            last_refresh=parse_credential_time(raw.get("last_refresh")),
            expiry=parse_credential_time(raw.get("expired")),
            source_path=path,
        )

    def _load_native(self, path: Path) -> list[Account]:
        raw, load_error = read_native_json(path)
        if load_error:
            return [native_failure(path, load_error)]
        if raw is None:
            return []

        tokens = raw.get("tokens")
        if not isinstance(tokens, dict):
            tokens = {}
        access_token = string_from_map(tokens, "access_token")
        if not access_token:
            return [native_failure(path, f"no access token found in {path}")]

        id_token = string_from_map(tokens, "id_token")
        client_id, scopes = extract_codex_auth_details(access_token, id_token)
        return [
            Account(
                identity=NATIVE_IDENTITY,
                account_id=string_from_map(tokens, "account_id"),
                access_token=access_token,
                id_token=id_token,
                refresh_token=string_from_map(tokens, "refresh_token"),
                client_id=client_id,
                scopes=scopes,
                expiry=_jwt_expiry(access_token),
                last_refresh=parse_credential_time(raw.get("last_refresh")),
                source_path=path,
                is_native=True,
            )
        ]

    def missing_credentials_message(self, source: CredentialSource) -> str:
        if source is CredentialSource.NATIVE:
            return "No credentials found in ~/.codex/auth.json"
        return f"No credential files found matching ~/.cli-proxy-api/{PROXY_PATTERN}"

    def refresh(self, account: Account, http: QuotaHTTP) -> str:
        if account.is_native:
            raise reauth_error(self.name)
        if not account.refresh_token:
            raise RefreshError("refresh token not available")

        form = {
            "grant_type": "refresh_token",
            "refresh_token": account.refresh_token,
            "client_id": account.client_id or DEFAULT_CLIENT_ID,
        }
        if account.scopes:
            form["scope"] = " ".join(account.scopes)

        raw = exchange_refresh_token(http, self.name, self.refresh_url, form=form)
        access_token = string_from_map(raw, *ACCESS_TOKEN_KEYS)
        if not access_token:
            logger.debug("Codex: token refresh response missing access_token")
            raise RefreshError("token refresh failed: empty access_token")
        refresh_token = string_from_map(raw, *REFRESH_TOKEN_KEYS)
        id_token = string_from_map(raw, *ID_TOKEN_KEYS)
        now = utcnow()
        expiry = expiry_from_delta(now, int_from_map(raw, *EXPIRES_IN_KEYS))

        def mutate(data: dict[str, Any]) -> None:
            data["access_token"] = access_token
            if refresh_token:
                data["refresh_token"] = refresh_token
            if id_token:
                data["id_token"] = id_token
            data["last_refresh"] = format_credential_time(now)
            if expiry is not None:
                data["expired"] = format_credential_time(expiry)

        persist_refresh(account, mutate)
        account.apply_refresh(access_token, refresh_token, expiry, id_token=id_token, refreshed_at=now)
        return access_token

    def fetch_quota(self, account: Account, token: str, http: QuotaHTTP) -> dict[str, Any]:
        resp = http.get(
            self.base_url + USAGE_PATH,
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
        )
        return decode_quota_response(self.name, resp)

    def parse_usage(self, payload: dict[str, Any], account: Account) -> list[UsageRow]:
        rate_limit = payload.get("rate_limit")
        if not isinstance(rate_limit, dict):
            return []
        provider = self.display_name(account)
        rows: list[UsageRow] = []
        for key, label in (("primary_window", "5-hour"), ("secondary_window", "7-day")):
            window = rate_limit.get(key)
            if not isinstance(window, dict):
                continue
            used = window.get("used_percent")
            rows.append(
                UsageRow(
                    provider=provider,
                    label=label,
                    usage_percent=float(used) if isinstance(used, (int, float)) else 0.0,
                    reset_at=_unix_to_dt(window.get("reset_at")),
                    identity=account.identity,
                    vendor=self.name,
                )
            )
        return rows


def extract_email_from_filename(filename: str) -> str:
    name = filename.removeprefix("codex-")
    return name.removesuffix(".json")


def extract_codex_auth_details(access_token: str, id_token: str) -> tuple[str, list[str]]:
    # The id token carries the OAuth client id; the access token's aud is the
    # API audience, so only its explicit client_id claim is trusted.
    client_id, scopes = client_id_and_scopes(id_token)
    if not client_id:
        client_id = extract_explicit_client_id(access_token)
    if not scopes:
        _, scopes = client_id_and_scopes(access_token)
    return client_id or DEFAULT_CLIENT_ID, scopes


def _jwt_expiry(token: str) -> datetime | None:
    return _unix_to_dt(claim(token, "exp"))


def _unix_to_dt(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
