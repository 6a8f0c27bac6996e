from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from aimeter.credentials import format_credential_time, millis_to_datetime, parse_credential_time
from aimeter.errors import RefreshError
from aimeter.http import QuotaHTTP
from aimeter.jwt import normalize_scopes
from aimeter.models import Account, CredentialSource, ProviderName, UsageRow
from aimeter.providers.base import (
    ACCESS_TOKEN_KEYS,
    EXPIRES_IN_KEYS,
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

DEFAULT_BASE_URL = "https://api.anthropic.com"
USAGE_PATH = "/api/oauth/usage"
ANTHROPIC_BETA = "oauth-2025-04-20"
TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
DEFAULT_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
DEFAULT_SCOPES = ["user:profile", "user:inference", "user:sessions:claude_code"]

PROXY_PATTERN = "claude-*.json"
NATIVE_PATH = Path(".claude") / ".credentials.json"

WINDOWS = (("five_hour", "5-hour"), ("seven_day", "7-day"))


class ClaudeAdapter(ProviderAdapter):
    name = ProviderName.CLAUDE

    def __init__(self, base_url: str | None = None, token_url: str | None = None) -> None:
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.token_url = token_url or TOKEN_URL

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

        def failed(message: str) -> Account:
            return Account(identity=source_name, email=source_name, source_name=source_name, source_path=path, load_error=message)

        try:
            raw = read_json_object(path)
        except ValueError as exc:
            return failed(str(exc))

        cred_type = string_from_map(raw, "type")
        if cred_type and cred_type != "claude":
            return failed(f"unexpected credential type {cred_type!r}")
        access_token = string_from_map(raw, "access_token")
        if not access_token:
            return failed("missing access_token")

        email = string_from_map(raw, "email") or source_name
        return Account(
            identity=email,
            email=email,
            source_name=source_name,
            access_token=access_token,
            refresh_token=string_from_map(raw, "refresh_token"),
            id_token=string_from_map(raw, "id_token"),
            scopes=normalize_scopes(raw.get("scope") or raw.get("scopes")),
            expiry=parse_credential_time(raw.get("expired")),
            last_refresh=parse_credential_time(raw.get("last_refresh")),
            source_path=path,
        )

    def _load_native(self, path: Path) -> list[Account]:
        raw, load_error = read_native_json(path)
        if load_error:
            return [native_failure(path, load_error)]
        if raw is None:
            return []

        oauth = raw.get("claudeAiOauth")
        if not isinstance(oauth, dict):
            oauth = {}
        access_token = string_from_map(oauth, "accessToken")
        if not access_token:
            return [native_failure(path, f"no access token found in {path}")]

        return [
            Account(
                identity=NATIVE_IDENTITY,
                access_token=access_token,
                refresh_token=string_from_map(oauth, "refreshToken"),
                scopes=normalize_scopes(oauth.get("scopes")),
                expiry=millis_to_datetime(oauth.get("expiresAt")),
                source_path=path,
                is_native=True,
            )
        ]

    def missing_credentials_message(self, source: CredentialSource) -> str:
        if source is CredentialSource.NATIVE:
            return "No credentials found in ~/.claude/.credentials.json"
        return f"No credential files found matching ~/.cli-proxy-api/{PROXY_PATTERN}"

    def refresh(self, account: Account, http: QuotaHTTP) -> str:
        if account.is_native:
            raise reauth_error(self.name)
        if not account.refresh_token:
            raise RefreshError("refresh token not available")

        payload = {
            "grant_type": "refresh_token",
            "refresh_token": account.refresh_token,
            "client_id": account.client_id or DEFAULT_CLIENT_ID,
            "scope": " ".join(account.scopes or DEFAULT_SCOPES),
        }
        raw = exchange_refresh_token(http, self.name, self.token_url, json_body=payload)
        access_token = string_from_map(raw, *ACCESS_TOKEN_KEYS)
        if not access_token:
            logger.debug("Claude: token refresh response missing access_token")
            raise RefreshError("token refresh failed: empty access_token")
        refresh_token = string_from_map(raw, *REFRESH_TOKEN_KEYS)
        now = utcnow()
        expiry = expiry_from_delta(now, int_from_map(raw, *EXPIRES_IN_KEYS))

        def mutate(data: dict[str, Any]) -> None:
            data["access_token"] = access_token
            if refresh_token:
                data["refresh_token"] = refresh_token
            data["last_refresh"] = format_credential_time(now)
            if expiry is not None:
                data["expired"] = format_credential_time(expiry)

        persist_refresh(account, mutate)
        account.apply_refresh(access_token, refresh_token, expiry, refreshed_at=now)
        return access_token

    def fetch_quota(self, account: Account, token: str, http: QuotaHTTP) -> dict[str, Any]:
        resp = http.get(
            self.base_url + USAGE_PATH,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
                "anthropic-beta": ANTHROPIC_BETA,
            },
        )
        return decode_quota_response(self.name, resp)

    def parse_usage(self, payload: dict[str, Any], account: Account) -> list[UsageRow]:
        provider = self.display_name(account)
        rows: list[UsageRow] = []
        for key, label in WINDOWS:
            window = payload.get(key)
            if not isinstance(window, dict):
                continue
            resets_at = window.get("resets_at")
            reset = parse_credential_time(resets_at)
            if resets_at and reset is None:
                rows.append(
                    UsageRow(
                        provider=provider,
                        label=label,
                        is_warning=True,
                        message=f"Parse error: invalid reset time format: {resets_at!r}",
                        identity=account.identity,
                        vendor=self.name,
                    )
                )
                continue
            utilization = window.get("utilization")
            rows.append(
                UsageRow(
                    provider=provider,
                    label=label,
                    usage_percent=float(utilization) if isinstance(utilization, (int, float)) else 0.0,
                    reset_at=reset,
                    identity=account.identity,
                    vendor=self.name,
                )
            )
        return rows


def extract_email_from_filename(filename: str) -> str:
    name = filename.removeprefix("claude-")
    return name.removesuffix(".json")
