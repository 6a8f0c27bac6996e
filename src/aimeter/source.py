from __future__ import annotations

import logging
from pathlib import Path

from aimeter.models import CredentialSource

logger = logging.getLogger(__name__)

PROXY_DIR_NAME = ".cli-proxy-api"

PROXY_PATTERNS = (
    "claude-*.json",
    "codex-*.json",
    "gemini-*.json",
    "*@*-*.json",
)


def proxy_dir(home_dir: Path) -> Path:
    return Path(home_dir) / PROXY_DIR_NAME


def detect_credential_source(home_dir: Path | str | None) -> CredentialSource:
    # An unknown home must not turn into a scan of the working directory.
    if not home_dir:
        return CredentialSource.NATIVE

    directory = proxy_dir(Path(home_dir))
    for pattern in PROXY_PATTERNS:
        try:
            found = next(directory.glob(pattern), None)
        except OSError as exc:
            logger.debug("scan of %s/%s failed: %s", directory, pattern, exc)
            continue
        if found is not None:
            logger.debug("found proxy credential %s", found)
            return CredentialSource.PROXY
    return CredentialSource.NATIVE


def resolve_home_dir(override: str | None = None) -> Path | None:
    if override:
        return Path(override).expanduser()
    try:
        return Path.home()
    except RuntimeError:
        return None
