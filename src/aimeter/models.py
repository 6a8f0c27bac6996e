from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path


class ProviderName(str, Enum):
    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"

    @property
    def display(self) -> str:
        return self.value.capitalize()


class CredentialSource(str, Enum):
    PROXY = "proxy"
    NATIVE = "native"

    @property
    def display_name(self) -> str:
        if self is CredentialSource.PROXY:
            return "~/.cli-proxy-api/"
        return "native CLI directories"


@dataclass
class Account:
    identity: str
    access_token: str = ""
    refresh_token: str = ""
    client_id: str = ""
    client_secret: str = ""
    scopes: list[str] = field(default_factory=list)
    token_uri: str = ""
    expiry: datetime | None = None
    last_refresh: datetime | None = None
    source_path: Path | None = None
    is_native: bool = False
    load_error: str = ""
    email: str = ""
    source_name: str = ""
    account_id: str = ""
    id_token: str = ""
    project_id: str = ""

    def __post_init__(self) -> None:
        if self.access_token and self.load_error:
            raise ValueError("an account with a load error cannot carry an access token")

    def __setattr__(self, name: str, value: object) -> None:
        if name == "is_native" and "is_native" in self.__dict__:
            raise AttributeError("is_native is fixed when the account is loaded")
        super().__setattr__(name, value)

    @property
    def usable(self) -> bool:
        return bool(self.access_token)

    def apply_refresh(
        self,
        access_token: str,
        refresh_token: str = "",
        expiry: datetime | None = None,
        id_token: str = "",
        refreshed_at: datetime | None = None,
    ) -> None:
        self.access_token = access_token
        if refresh_token:
            self.refresh_token = refresh_token
        if expiry is not None:
            self.expiry = expiry
        if id_token:
            self.id_token = id_token
        if refreshed_at is not None:
            self.last_refresh = refreshed_at


@dataclass
class UsageRow:
    provider: str
    label: str = ""
    usage_percent: float = 0.0
    reset_at: datetime | None = None
    is_warning: bool = False
    message: str = ""
    identity: str = ""
    vendor: ProviderName | None = None
    is_group: bool = False


@dataclass
class UsageReport:
    generated_at: datetime
    source: CredentialSource
    rows: list[UsageRow]
