from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from aimeter.credentials import format_credential_time, millis_to_datetime, parse_credential_time
from aimeter.errors import CredentialUpdateError, RefreshError
from aimeter.http import QuotaHTTP
from aimeter.jwt import claim
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

DEFAULT_BASE_URL = "https://cloudcode-pa.googleapis.com"
QUOTA_PATH = "/v1internal:retrieveUserQuota"
TOKEN_URI = "https://oauth2.googleapis.com/token"
# Public installed-app client id of the gemini CLI.
DEFAULT_CLIENT_ID = "681255809395-oo8ft2oprdrnp9e3aqf6av3hmdib135j.apps.googleusercontent.com"

PROXY_PATTERNS = ("gemini-*.json", "*@*-*.json")
OTHER_VENDOR_PREFIXES = ("claude-", "codex-")
NATIVE_PATH = Path(".gemini") / "oauth_creds.json"


class GeminiAdapter(ProviderAdapter):
    name = ProviderName.GEMINI

    def __init__(self, base_url: str | None = None, token_uri: str | None = None) -> None:
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.token_uri = token_uri or ""

    def load_accounts(self, home_dir: Path | None, source: CredentialSource) -> list[Account]:
        if home_dir is None:
            return []
        if source is CredentialSource.NATIVE:
            return self._load_native(home_dir / NATIVE_PATH)

        accounts: list[Account] = []
        for path in glob_proxy_files(home_dir, *PROXY_PATTERNS):
            if path.name.startswith(OTHER_VENDOR_PREFIXES):
                continue
            account = self._load_proxy_file(path)
            if account is not None:
                accounts.append(account)
        apply_display_names(accounts)
        return accounts

    def _load_proxy_file(self, path: Path) -> Account | None:
        """Parse one proxy file; ``None`` means it is not a Gemini credential."""
        base_name = path.name.removesuffix(".json").removeprefix("gemini-")

        def failed(message: str) -> Account:
            return Account(identity=base_name, email=base_name, source_name=base_name, source_path=path, load_error=message)

        try:
            raw = read_json_object(path)
        except ValueError as exc:
            return failed(str(exc))

        cred_type = string_from_map(raw, "type")
        if cred_type and cred_type != "gemini":
            return None

        token = raw.get("token")
        if not isinstance(token, dict):
            token = {}
        access_token = string_from_map(token, "access_token")
        if not access_token:
            return failed("missing token.access_token")
        project_id = string_from_map(raw, "project_id")
        if not project_id:
            return failed("missing project_id")

        # filename convention: {email}-{project_id}.json, optionally gemini- prefixed
        suffix = f"-{project_id}"
        if base_name.endswith(suffix):
            email = base_name.removesuffix(suffix)
        else:
            email = string_from_map(raw, "email")
        if not email:
            return None

        return Account(
            identity=email,
            email=email,
            source_name=email,
            access_token=access_token,
            refresh_token=string_from_map(token, "refresh_token"),
            client_id=string_from_map(token, "client_id"),
            client_secret=string_from_map(token, "client_secret"),
            token_uri=string_from_map(token, "token_uri"),
            expiry=parse_credential_time(token.get("expiry")),
            last_refresh=parse_credential_time(raw.get("last_refresh")),
            project_id=project_id,
            source_path=path,
        )

    def _load_native(self, path: Path) -> list[Account]:
        raw, load_error = read_native_json(path)
        if load_error:
            return [native_failure(path, load_error)]
        if raw is None:
            return []

        access_token = string_from_map(raw, "access_token")
        if not access_token:
            return [native_failure(path, f"no access token found in {path}")]

        id_token = string_from_map(raw, "id_token")
        email = claim(id_token, "email")
        return [
            Account(
                identity=email if isinstance(email, str) and email else NATIVE_IDENTITY,
                email=email if isinstance(email, str) else "",
                access_token=access_token,
                refresh_token=string_from_map(raw, "refresh_token"),
                id_token=id_token,
                expiry=millis_to_datetime(raw.get("expiry_date")),
                source_path=path,
                is_native=True,
            )
        ]

    def missing_credentials_message(self, source: CredentialSource) -> str:
        if source is CredentialSource.NATIVE:
            return "No credentials found in ~/.gemini/oauth_creds.json"
        return "No valid credential files found in ~/.cli-proxy-api/gemini-*.json"

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
        if account.client_secret:
            form["client_secret"] = account.client_secret

        url = self.token_uri or account.token_uri or TOKEN_URI
        raw = exchange_refresh_token(http, self.name, url, form=form)
        access_token = string_from_map(raw, *ACCESS_TOKEN_KEYS)
        if not access_token:
            logger.debug("Gemini: token refresh response missing access_token")
            raise RefreshError("token refresh failed: empty access_token")
        refresh_token = string_from_map(raw, *REFRESH_TOKEN_KEYS)
        now = utcnow()
        expiry = expiry_from_delta(now, int_from_map(raw, *EXPIRES_IN_KEYS))

        def mutate(data: dict[str, Any]) -> None:
            token = data.get("token")
            if not isinstance(token, dict):
                raise CredentialUpdateError("missing token object in credentials file")
            token["access_token"] = access_token
            if refresh_token:
                token["refresh_token"] = refresh_token
            if expiry is not None:
                token["expiry"] = format_credential_time(expiry)
            data["last_refresh"] = format_credential_time(now)

        persist_refresh(account, mutate)
        account.apply_refresh(access_token, refresh_token, expiry, refreshed_at=now)
        return access_token

    def fetch_quota(self, account: Account, token: str, http: QuotaHTTP) -> dict[str, Any]:
        resp = http.post(
            self.base_url + QUOTA_PATH,
            json={"project": account.project_id},
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
        )
        return decode_quota_response(self.name, resp)

    def parse_usage(self, payload: dict[str, Any], account: Account) -> list[UsageRow]:
        buckets = payload.get("buckets")
        if not isinstance(buckets, list):
            return []
        provider = self.display_name(account)
        rows: list[UsageRow] = []
        for bucket in buckets:
            if not isinstance(bucket, dict):
                continue
            model_id = string_from_map(bucket, "modelId")
            reset_time = bucket.get("resetTime")
            reset = parse_credential_time(reset_time)
            if reset is None:
                rows.append(
                    UsageRow(
                        provider=provider,
                        label=model_id,
                        is_warning=True,
                        message=f"Parse error: invalid reset time format: {reset_time!r}",
                        identity=account.identity,
                        vendor=self.name,
                    )
                )
                continue
            rows.append(
                UsageRow(
                    provider=provider,
                    label=model_id,
                    usage_percent=used_percent(bucket.get("remainingFraction")),
                    reset_at=reset,
                    identity=account.identity,
                    vendor=self.name,
                )
            )
        return rows


def used_percent(remaining_fraction: Any) -> float:
    if isinstance(remaining_fraction, bool) or not isinstance(remaining_fraction, (int, float)):
        remaining_fraction = 0.0
    remaining = min(1.0, max(0.0, float(remaining_fraction)))
    return (1.0 - remaining) * 100.0
