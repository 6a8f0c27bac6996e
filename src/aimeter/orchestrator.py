"""Per-account usage fetch with a single refresh-and-retry on auth failure.

State flow for one account::

    IDLE -> REQUESTED -> OK | UNAUTHORIZED
    UNAUTHORIZED -> REFRESH_NOT_ALLOWED | REFRESHING
    REFRESHING -> REFRESH_FAILED | RETRYING
    RETRYING -> OK | FAILED
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from aimeter.errors import (
    AimeterError,
    APIStatusError,
    ReauthRequiredError,
    RequestCancelledError,
    RequestTimeoutError,
)
from aimeter.http import QuotaHTTP, redact_tokens
from aimeter.models import Account, CredentialSource, UsageRow
from aimeter.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

EMPTY_RESULT = "empty result"
NO_TOKEN = "no access token found in credentials"


class FetchState(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    UNAUTHORIZED = "unauthorized"
    REFRESH_NOT_ALLOWED = "refresh_not_allowed"
    REFRESHING = "refreshing"
    REFRESH_FAILED = "refresh_failed"
    RETRYING = "retrying"
    OK = "ok"
    FAILED = "failed"


@dataclass
class FetchOutcome:
    account: Account
    state: FetchState
    rows: list[UsageRow] = field(default_factory=list)
    error: Exception | None = None
    refreshed: bool = False

    @property
    def ok(self) -> bool:
        return self.state is FetchState.OK


def warning_message(err: BaseException) -> str:
    if isinstance(err, RequestTimeoutError):
        return "request timed out"
    if isinstance(err, RequestCancelledError):
        return "request cancelled"
    if isinstance(err, APIStatusError):
        body = err.body.lower()
        if "revok" in body or "invalid_grant" in body:
            return "authentication failed (token revoked)"
        if err.status_code == 401:
            return "authentication failed (token may be expired)"
        if err.status_code == 403:
            return "authentication failed (permission denied)"
    return str(err)


def _warning_row(provider: ProviderAdapter, account: Account | None, message: str) -> UsageRow:
    return UsageRow(
        provider=provider.display_name(account),
        is_warning=True,
        message=message,
        identity=account.identity if account else "",
        vendor=provider.name,
    )


def fetch_account_usage(provider: ProviderAdapter, account: Account, http: QuotaHTTP) -> FetchOutcome:
    def finish(state: FetchState, err: Exception | None = None, rows: list[UsageRow] | None = None, refreshed: bool = False) -> FetchOutcome:
        if err is not None:
            rows = [_warning_row(provider, account, warning_message(err))]
        return FetchOutcome(account=account, state=state, rows=rows or [], error=err, refreshed=refreshed)

    if not account.usable:
        return finish(FetchState.FAILED, AimeterError(account.load_error or NO_TOKEN))

    name = provider.display_name(account)
    try:
        payload = provider.fetch_quota(account, account.access_token, http)
    except APIStatusError as exc:
        logger.debug("%s: usage API status=%d body=%r", name, exc.status_code, redact_tokens(exc.body))
        if not exc.is_auth_failure:
            return finish(FetchState.FAILED, exc)
        if not account.refresh_token:
            return finish(
                FetchState.REFRESH_NOT_ALLOWED,
                ReauthRequiredError(f"{warning_message(exc)}; re-authenticate with {provider.name.value} externally"),
            )
        return _refresh_and_retry(provider, account, http, exc, finish)
    except AimeterError as exc:
        return finish(FetchState.FAILED, exc)

    return _rows_from_payload(provider, account, payload, finish)


def _refresh_and_retry(provider, account, http, cause, finish) -> FetchOutcome:
    name = provider.display_name(account)
    logger.debug("%s: attempting token refresh after status=%d", name, cause.status_code)
    try:
        token = provider.refresh(account, http)
    except ReauthRequiredError as exc:
        return finish(FetchState.REFRESH_NOT_ALLOWED, exc)
    except AimeterError as exc:
        logger.debug("%s: token refresh failed: %s", name, exc)
        return finish(FetchState.REFRESH_FAILED, exc)

    logger.debug("%s: token refresh succeeded, retrying usage API", name)
    try:
        payload = provider.fetch_quota(account, token, http)
    except AimeterError as exc:
        return finish(FetchState.FAILED, exc, refreshed=True)
    return _rows_from_payload(provider, account, payload, finish, refreshed=True)


def _rows_from_payload(provider, account, payload: dict[str, Any], finish, refreshed: bool = False) -> FetchOutcome:
    rows = provider.parse_usage(payload, account)
    if not rows:
        rows = [_warning_row(provider, account, EMPTY_RESULT)]
    return finish(FetchState.OK, rows=rows, refreshed=refreshed)


def fetch_provider_usage(
    provider: ProviderAdapter,
    home_dir: Path | None,
    source: CredentialSource,
    http: QuotaHTTP,
) -> list[UsageRow]:
    accounts = provider.load_accounts(home_dir, source)
    if not accounts:
        return [_warning_row(provider, None, provider.missing_credentials_message(source))]

    rows: list[UsageRow] = []
    for account in accounts:
        try:
            outcome = fetch_account_usage(provider, account, http)
        except Exception as exc:
            logger.exception("%s: usage fetch crashed", provider.display_name(account))
            outcome = FetchOutcome(
                account=account,
                state=FetchState.FAILED,
                rows=[_warning_row(provider, account, str(exc) or type(exc).__name__)],
                error=exc,
            )
        logger.debug("%s: fetch finished in state %s", provider.display_name(account), outcome.state.value)
        rows.extend(outcome.rows)
    return rows
