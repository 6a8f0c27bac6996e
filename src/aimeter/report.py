from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, replace
from datetime import datetime, timezone
from pathlib import Path
import json
import logging

import httpx

from aimeter.config import Config
from aimeter.http import Deadline, QuotaHTTP
from aimeter.models import CredentialSource, ProviderName, UsageReport, UsageRow
from aimeter.orchestrator import fetch_provider_usage
from aimeter.providers import ClaudeAdapter, CodexAdapter, GeminiAdapter, ProviderAdapter
from aimeter.providers import claude, codex, gemini
from aimeter.source import detect_credential_source, proxy_dir, resolve_home_dir

logger = logging.getLogger(__name__)

PROVIDER_ORDER = {name: index for index, name in enumerate(ProviderName)}
GEMINI_WINDOW_LABEL = "24-hour"
MODEL_INDENT = "  "


def build_providers(cfg: Config) -> list[ProviderAdapter]:
    providers: list[ProviderAdapter] = []
    claude_cfg = cfg.providers["claude"]
    if claude_cfg.enabled:
        providers.append(ClaudeAdapter(base_url=claude_cfg.base_url or None, token_url=claude_cfg.token_url or None))
    codex_cfg = cfg.providers["codex"]
    if codex_cfg.enabled:
        providers.append(CodexAdapter(base_url=codex_cfg.base_url or None, refresh_url=codex_cfg.token_url or None))
    gemini_cfg = cfg.providers["gemini"]
    if gemini_cfg.enabled:
        providers.append(GeminiAdapter(base_url=gemini_cfg.base_url or None, token_uri=gemini_cfg.token_url or None))
    return providers


def build_report(
    cfg: Config,
    providers: list[ProviderAdapter] | None = None,
    home_dir: Path | None = None,
    transport: httpx.BaseTransport | None = None,
) -> UsageReport:
    home = home_dir if home_dir is not None else resolve_home_dir(cfg.general.home_dir)
    source = detect_credential_source(home)
    logger.debug("credential source: %s", source.display_name)
    deadline = Deadline(cfg.general.timeout_seconds)
    providers = build_providers(cfg) if providers is None else providers

    def run(provider: ProviderAdapter) -> list[UsageRow]:
        client = httpx.Client(transport=transport) if transport is not None else None
        with QuotaHTTP(client, deadline, cfg.general.request_timeout_seconds) as http:
            try:
                return fetch_provider_usage(provider, home, source, http)
            finally:
                if client is not None:
                    client.close()

    rows: list[UsageRow] = []
    with ThreadPoolExecutor(max_workers=max(1, len(providers))) as pool:
        futures = [(provider, pool.submit(run, provider)) for provider in providers]
        for provider, future in futures:
            try:
                rows.extend(future.result())
            except Exception as exc:
                logger.exception("%s: usage fetch crashed", provider.name.display)
                rows.append(UsageRow(provider=provider.name.display, is_warning=True, message=str(exc), vendor=provider.name))

    return UsageReport(generated_at=datetime.now(timezone.utc), source=source, rows=rows)


def _vendor_of(row: UsageRow) -> ProviderName | None:
    if row.vendor is not None:
        return row.vendor
    for name in ProviderName:
        if row.provider.startswith(name.display):
            return name
    return None


def is_gemini_2x_model(label: str) -> bool:
    return label.lower().startswith("gemini-2")


def filter_rows(rows: list[UsageRow], show_gemini_old: bool = False) -> list[UsageRow]:
    if show_gemini_old:
        return list(rows)
    return [
        row
        for row in rows
        if row.is_warning or not (_vendor_of(row) is ProviderName.GEMINI and is_gemini_2x_model(row.label))
    ]


def sort_rows(rows: list[UsageRow]) -> list[UsageRow]:
    def key(row: UsageRow) -> tuple:
        vendor = _vendor_of(row)
        order = PROVIDER_ORDER[vendor] if vendor is not None else len(PROVIDER_ORDER)
        return (order, row.is_warning, row.provider, row.label)

    return sorted(rows, key=key)


def format_gemini_rows(rows: list[UsageRow]) -> list[UsageRow]:
    formatted: list[UsageRow] = []
    seen_header: set[str] = set()
    for row in rows:
        if _vendor_of(row) is not ProviderName.GEMINI or not row.label:
            formatted.append(row)
            continue
        if row.provider not in seen_header:
            formatted.append(UsageRow(provider=row.provider, is_group=True, vendor=ProviderName.GEMINI))
            seen_header.add(row.provider)
        formatted.append(replace(row, provider=MODEL_INDENT + row.label, label=GEMINI_WINDOW_LABEL))
    return formatted


def group_provider_rows(rows: list[UsageRow]) -> list[UsageRow]:
    grouped = {row.provider for row in rows if row.is_group}
    counts: dict[str, int] = {}
    for row in rows:
        if row.is_group or row.provider.startswith(MODEL_INDENT) or row.provider in grouped:
            continue
        counts[row.provider] = counts.get(row.provider, 0) + 1

    formatted: list[UsageRow] = []
    seen_header: set[str] = set()
    for row in rows:
        if row.is_group or row.provider.startswith(MODEL_INDENT):
            formatted.append(row)
            continue
        if row.provider in grouped:
            formatted.append(replace(row, provider=""))
            continue
        if counts.get(row.provider, 0) <= 1:
            formatted.append(row)
            continue
        if row.provider not in seen_header:
            formatted.append(UsageRow(provider=row.provider, is_group=True, vendor=row.vendor))
            seen_header.add(row.provider)
        formatted.append(replace(row, provider=""))
    return formatted


def arrange_rows(rows: list[UsageRow], show_gemini_old: bool = False) -> list[UsageRow]:
    rows = sort_rows(filter_rows(rows, show_gemini_old))
    return group_provider_rows(format_gemini_rows(rows))


def _json_default(obj):
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"not serializable: {type(obj)!r}")


def report_to_json(report: UsageReport, show_gemini_old: bool = False) -> str:
    payload = {
        "generated_at": report.generated_at,
        "source": report.source.value,
        "rows": [asdict(row) for row in sort_rows(filter_rows(report.rows, show_gemini_old))],
    }
    return json.dumps(payload, default=_json_default, indent=2)


def source_paths(home_dir: Path | None, source: CredentialSource) -> list[str]:
    if home_dir is None:
        return []
    if source is CredentialSource.PROXY:
        return [str(proxy_dir(home_dir))]
    return [str(home_dir / path) for path in (claude.NATIVE_PATH, codex.NATIVE_PATH, gemini.NATIVE_PATH)]
