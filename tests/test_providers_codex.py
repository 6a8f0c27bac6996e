import json
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import parse_qs

import pytest

from aimeter.errors import APIStatusError, ReauthRequiredError, RefreshError
from aimeter.models import Account, CredentialSource
from aimeter.providers.codex import DEFAULT_CLIENT_ID, CodexAdapter, extract_codex_auth_details
from conftest import FakeServer, make_jwt, write_json

TOKEN_PATH = "/oauth/token"


def test_alice_and_bob(proxy: Path, home: Path) -> None:
    write_json(proxy / "codex-alice.json", {"access_token": "T1"})
    write_json(proxy / "codex-bob.json", "{not valid json")

    accounts = CodexAdapter().load_accounts(home, CredentialSource.PROXY)

    assert [a.identity for a in accounts] == ["alice", "bob"]
    assert accounts[0].access_token == "T1"
    assert accounts[0].load_error == ""
    assert accounts[1].access_token == ""
    assert accounts[1].load_error.startswith("failed to parse JSON: ")


def test_missing_access_token_is_load_error(proxy: Path, home: Path) -> None:
    write_json(proxy / "codex-carol.json", {"refresh_token": "r"})
    (account,) = CodexAdapter().load_accounts(home, CredentialSource.PROXY)
    assert account.load_error == "missing access_token"


def test_duplicate_emails_are_disambiguated(proxy: Path, home: Path) -> None:
    write_json(proxy / "codex-work.json", {"access_token": "a", "email": "dev@example.com", "account_id": "acct-111111"})
    write_json(proxy / "codex-home.json", {"access_token": "b", "email": "dev@example.com", "account_id": "acct-222222"})

    accounts = CodexAdapter().load_accounts(home, CredentialSource.PROXY)
    assert sorted(a.identity for a in accounts) == ["home", "work"]


def test_duplicate_emails_fall_back_to_account_id(proxy: Path, home: Path) -> None:
    write_json(proxy / "codex-dev@example.com.json", {"access_token": "a", "email": "dev@example.com", "account_id": "aaaaaa-1"})
    write_json(proxy / "codex-DEV@example.com.json", {"access_token": "b", "email": "dev@example.com", "account_id": "bbbbbb-2"})

    accounts = CodexAdapter().load_accounts(home, CredentialSource.PROXY)
    assert sorted(a.identity for a in accounts) == ["dev@example.com#aaaaaa", "dev@example.com#bbbbbb"]


def test_native_missing_file_is_silent(home: Path) -> None:
    assert CodexAdapter().load_accounts(home, CredentialSource.NATIVE) == []


def test_native_reads_tokens_and_jwt_expiry(home: Path) -> None:
    access = make_jwt({"exp": 1_800_000_000, "client_id": "app_native"})
    write_json(home / ".codex" / "auth.json", {"tokens": {"access_token": access, "refresh_token": "r", "account_id": "acct"}})

    (account,) = CodexAdapter().load_accounts(home, CredentialSource.NATIVE)
    assert account.is_native
    assert account.identity == "native"
    assert account.client_id == "app_native"
    assert account.expiry == datetime.fromtimestamp(1_800_000_000, tz=timezone.utc)


def test_native_unparsable_file_is_load_error(home: Path) -> None:
    write_json(home / ".codex" / "auth.json", "{oops")
    (account,) = CodexAdapter().load_accounts(home, CredentialSource.NATIVE)
    assert account.is_native
    assert account.access_token == ""
    assert "failed to parse" in account.load_error


def test_proxy_source_ignores_native_file(home: Path, proxy: Path) -> None:
    write_json(home / ".codex" / "auth.json", {"tokens": {"access_token": "t"}})
    write_json(proxy / "claude-x.json", {"access_token": "t"})
    assert CodexAdapter().load_accounts(home, CredentialSource.PROXY) == []


def test_auth_details_prefer_id_token() -> None:
    id_token = make_jwt({"aud": ["app_from_id"], "scp": ["openid"]})
    access = make_jwt({"aud": "https://api.openai.com/v1", "scope": "offline_access"})
    assert extract_codex_auth_details(access, id_token) == ("app_from_id", ["openid"])
    assert extract_codex_auth_details(access, "") == (DEFAULT_CLIENT_ID, ["offline_access"])


def test_refresh_persists_tokens(proxy: Path, home: Path, server: FakeServer) -> None:
    path = write_json(proxy / "codex-a.json", {"access_token": "old", "refresh_token": "r1", "keep": "me"})
    server.route("POST", TOKEN_PATH, (200, {"access_token": "new", "refreshToken": "r2", "id_token": "idt", "expires_in": "3600"}))
    (account,) = CodexAdapter().load_accounts(home, CredentialSource.PROXY)

    with server.http() as http:
        assert CodexAdapter().refresh(account, http) == "new"

    form = parse_qs(server.requests[0].content.decode())
    assert form["grant_type"] == ["refresh_token"]
    assert form["refresh_token"] == ["r1"]
    assert form["client_id"] == [DEFAULT_CLIENT_ID]

    data = json.loads(path.read_text())
    assert data["access_token"] == "new"
    assert data["refresh_token"] == "r2"
    assert data["id_token"] == "idt"
    assert data["keep"] == "me"
    assert data["last_refresh"].endswith("Z")
    assert "expired" in data
    assert account.access_token == "new"
    assert account.refresh_token == "r2"


def test_refresh_native_makes_no_request(home: Path, server: FakeServer) -> None:
    account = Account(identity="native", access_token="t", refresh_token="r", is_native=True)
    with server.http() as http:
        with pytest.raises(ReauthRequiredError, match="re-authenticate with codex externally"):
            CodexAdapter().refresh(account, http)
    assert server.requests == []


def test_refresh_rejected_keeps_file(proxy: Path, home: Path, server: FakeServer) -> None:
    path = write_json(proxy / "codex-a.json", {"access_token": "old", "refresh_token": "r1"})
    server.route("POST", TOKEN_PATH, (400, {"error": "invalid_grant"}))
    (account,) = CodexAdapter().load_accounts(home, CredentialSource.PROXY)

    with server.http() as http:
        with pytest.raises(APIStatusError) as info:
            CodexAdapter().refresh(account, http)
    assert info.value.status_code == 400
    assert json.loads(path.read_text())["access_token"] == "old"


def test_refresh_without_access_token_in_response(proxy: Path, home: Path, server: FakeServer) -> None:
    write_json(proxy / "codex-a.json", {"access_token": "old", "refresh_token": "r1"})
    server.route("POST", TOKEN_PATH, (200, {"token_type": "bearer"}))
    (account,) = CodexAdapter().load_accounts(home, CredentialSource.PROXY)

    with server.http() as http:
        with pytest.raises(RefreshError):
            CodexAdapter().refresh(account, http)
    assert account.access_token == "old"


def test_parse_usage_windows() -> None:
    account = Account(identity="alice", access_token="t")
    payload = {
        "rate_limit": {
            "primary_window": {"used_percent": 12.5, "reset_at": 1_800_000_000},
            "secondary_window": {"used_percent": 40, "reset_at": 0},
        }
    }
    rows = CodexAdapter().parse_usage(payload, account)
    assert [(r.label, r.usage_percent) for r in rows] == [("5-hour", 12.5), ("7-day", 40.0)]
    assert rows[0].provider == "Codex (alice)"
    assert rows[0].reset_at == datetime.fromtimestamp(1_800_000_000, tz=timezone.utc)
    assert rows[1].reset_at is None
    assert CodexAdapter().parse_usage({}, account) == []


def test_native_non_utf8_file_is_load_error(home: Path) -> None:
    path = home / ".codex" / "auth.json"
    path.parent.mkdir()
    path.write_bytes(b"\xff{}")
    (account,) = CodexAdapter().load_accounts(home, CredentialSource.NATIVE)
    assert account.is_native
    assert account.load_error.startswith(f"failed to parse {path}")


def test_proxy_non_utf8_file_is_load_error(proxy: Path, home: Path) -> None:
    (proxy / "codex-dave.json").write_bytes(b"\xff{}")
    write_json(proxy / "codex-erin.json", {"access_token": "T2"})
    accounts = CodexAdapter().load_accounts(home, CredentialSource.PROXY)
    assert [a.identity for a in accounts] == ["dave", "erin"]
    assert accounts[0].load_error.startswith("failed to parse JSON")
    assert accounts[1].access_token == "T2"


@pytest.mark.parametrize("expires_in", ["100000000000000000000", "\"99999999999999999999\"", "1e999", "1e20"])
def test_refresh_ignores_out_of_range_expiry(proxy: Path, home: Path, server: FakeServer, expires_in: str) -> None:
    path = write_json(proxy / "codex-a.json", {"access_token": "old", "refresh_token": "r1"})
    server.route("POST", TOKEN_PATH, (200, f'{{"access_token": "new", "expires_in": {expires_in}}}'))
    (account,) = CodexAdapter().load_accounts(home, CredentialSource.PROXY)

    with server.http() as http:
        assert CodexAdapter().refresh(account, http) == "new"

    data = json.loads(path.read_text())
    assert data["access_token"] == "new"
    assert "expired" not in data
    assert account.expiry is None
