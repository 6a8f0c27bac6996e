from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import tomllib
import tomli_w


PROVIDER_NAMES = ("claude", "codex", "gemini")
CONFIG_PATH = Path(os.environ.get("AIMETER_CONFIG", "~/.config/aimeter/config.toml")).expanduser()


@dataclass
class GeneralConfig:
    timeout_seconds: float = 60.0
    request_timeout_seconds: float = 30.0
    debug: bool = False
    show_gemini_old: bool = False
    home_dir: str = ""


@dataclass
class ProviderConfig:
    enabled: bool = True
    base_url: str = ""
    token_url: str = ""


@dataclass
class Config:
    general: GeneralConfig = field(default_factory=GeneralConfig)
    providers: dict[str, ProviderConfig] = field(
        default_factory=lambda: {name: ProviderConfig() for name in PROVIDER_NAMES}
    )


def _provider_from_dict(raw: dict) -> ProviderConfig:
    return ProviderConfig(
        enabled=bool(raw.get("enabled", True)),
        base_url=str(raw.get("base_url", "")),
        token_url=str(raw.get("token_url", "")),
    )


def _provider_to_dict(cfg: ProviderConfig) -> dict:
    return {
        "enabled": cfg.enabled,
        "base_url": cfg.base_url,
        "token_url": cfg.token_url,
    }


def load_config(path: Path | None = None) -> Config:
    path = path or CONFIG_PATH
    if not path.exists():
        cfg = Config()
        save_config(cfg, path)
        return cfg

    raw = tomllib.loads(path.read_text())
    general_raw = raw.get("general", {})
    providers_raw = raw.get("providers", {})

    return Config(
        general=GeneralConfig(
            timeout_seconds=float(general_raw.get("timeout_seconds", 60.0)),
            request_timeout_seconds=float(general_raw.get("request_timeout_seconds", 30.0)),
            debug=bool(general_raw.get("debug", False)),
            show_gemini_old=bool(general_raw.get("show_gemini_old", False)),
            home_dir=str(general_raw.get("home_dir", "")),
        ),
        providers={name: _provider_from_dict(providers_raw.get(name, {})) for name in PROVIDER_NAMES},
    )


def save_config(cfg: Config, path: Path | None = None) -> None:
    path = path or CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "general": {
            "timeout_seconds": cfg.general.timeout_seconds,
            "request_timeout_seconds": cfg.general.request_timeout_seconds,
            "debug": cfg.general.debug,
            "show_gemini_old": cfg.general.show_gemini_old,
            "home_dir": cfg.general.home_dir,
        },
        "providers": {name: _provider_to_dict(pc) for name, pc in cfg.providers.items()},
    }
    path.write_text(tomli_w.dumps(payload))


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"not a boolean: {value}")


def set_config_value(cfg: Config, dotted_key: str, value: str) -> None:
    keys = dotted_key.split(".")
    if len(keys) == 2 and keys[0] == "general":
        field_name = keys[1]
        if field_name in {"timeout_seconds", "request_timeout_seconds"}:
            seconds = float(value)
            if seconds <= 0:
                raise ValueError(f"{dotted_key} must be positive")
            setattr(cfg.general, field_name, seconds)
            return
        if field_name in {"debug", "show_gemini_old"}:
            setattr(cfg.general, field_name, _parse_bool(value))
            return
        if field_name == "home_dir":
            cfg.general.home_dir = value
            return

    if len(keys) == 3 and keys[0] == "providers":
        provider = keys[1]
        field_name = keys[2]
        if provider not in cfg.providers:
            raise ValueError(f"unknown provider: {provider}")
        if field_name == "enabled":
            cfg.providers[provider].enabled = _parse_bool(value)
            return
        if field_name in {"base_url", "token_url"}:
            setattr(cfg.providers[provider], field_name, value)
            return
    raise ValueError(f"unsupported key: {dotted_key}")
