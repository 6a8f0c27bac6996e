from __future__ import annotations

import argparse
import json
import logging
import platform
from dataclasses import asdict
from datetime import datetime, timezone

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from aimeter.config import CONFIG_PATH, PROVIDER_NAMES, load_config, save_config, set_config_value
from aimeter.models import UsageReport, UsageRow
from aimeter.report import arrange_rows, build_report, report_to_json, source_paths
from aimeter.source import detect_credential_source, resolve_home_dir

MAX_WARNING_LEN = 120


def _setup_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _bar_color(pct: float) -> str:
    if pct >= 80.0:
        return "red"
    if pct >= 50.0:
        return "yellow"
    return "green"


def _cli_bar(value: float, width: int = 20) -> Text:
    shown = max(0.0, value)
    bar_pct = min(100.0, shown)
    filled = int(round((bar_pct / 100.0) * width))
    empty = width - filled
    color = _bar_color(shown)
    bar = Text()
    bar.append("━" * filled, style=f"bold {color}")
    bar.append("╌" * empty, style="bright_black")
    bar.append(f"  {shown:5.1f}%", style=f"bold {color}")
    return bar


def format_reset_time(reset_at: datetime | None, now: datetime | None = None) -> str:
    if reset_at is None:
        return "-"
    now = now or datetime.now(timezone.utc)
    remaining = (reset_at - now).total_seconds()
    if remaining <= 0:
        return "expired"
    if remaining < 24 * 3600:
        hours = int(remaining // 3600)
        minutes = int((remaining % 3600) // 60)
        return f"in {hours}h {minutes}m"
    local = reset_at.astimezone()
    return f"{local.strftime('%b')} {local.day} {local.strftime('%H:%M %Z')}".strip()


def sanitize_warning(message: str, limit: int = MAX_WARNING_LEN) -> str:
    cleaned = " ".join(message.split())
    if len(cleaned) > limit:
        return cleaned[: limit - 3] + "..."
    return cleaned


def _render_row(table: Table, row: UsageRow, now: datetime) -> None:
    if row.is_group:
        table.add_row(Text(row.provider, style="bold bright_white"), "", "", "")
        return
    if row.is_warning:
        table.add_row(
            Text(row.provider, style="bold"),
            Text(row.label or "-", style="dim"),
            Text(f"⚠ {sanitize_warning(row.message)}", style="yellow"),
            "",
        )
        return
    table.add_row(
        Text(row.provider, style="bold"),
        Text(row.label, style="cyan"),
        _cli_bar(row.usage_percent),
        Text(format_reset_time(row.reset_at, now), style="bright_white"),
    )


def render_report(report: UsageReport, show_gemini_old: bool = False) -> Table:
    table = Table(show_header=True, header_style="bold bright_white", box=None, padding=(0, 2))
    table.add_column("Provider", no_wrap=True)
    table.add_column("Window", no_wrap=True)
    table.add_column("Usage")
    table.add_column("Resets", no_wrap=True)
    for row in arrange_rows(report.rows, show_gemini_old):
        _render_row(table, row, report.generated_at)
    return table


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="aimeter")
    sub = parser.add_subparsers(dest="cmd")

    report_cmd = sub.add_parser("report")
    for p in (parser, report_cmd):
        p.add_argument("--json", action="store_true", help="print the report as JSON")
        p.add_argument("--debug", action="store_true", help="log HTTP and refresh details to stderr")
        p.add_argument("--gemini-old", action="store_true", help="include gemini-2.x model rows")
        p.add_argument("--provider", choices=["all", *PROVIDER_NAMES], default="all")

    sub.add_parser("health")

    config = sub.add_parser("config")
    config_sub = config.add_subparsers(dest="config_cmd")
    config_sub.add_parser("show")
    config_set = config_sub.add_parser("set")
    config_set.add_argument("key")
    config_set.add_argument("value")

    args = parser.parse_args(argv)
    cfg = load_config()

    cmd = args.cmd or "report"
    _setup_logging(getattr(args, "debug", False) or cfg.general.debug)
    console = Console()

    if cmd == "report":
        if args.provider != "all":
            for name, provider_cfg in cfg.providers.items():
                provider_cfg.enabled = name == args.provider
        show_old = args.gemini_old or cfg.general.show_gemini_old
        report = build_report(cfg)
        if args.json:
            print(report_to_json(report, show_old))
            return
        console.print(f"[dim]Using credentials from {report.source.display_name}[/]")
        console.print(render_report(report, show_old))
        return

    if cmd == "health":
        home = resolve_home_dir(cfg.general.home_dir)
        source = detect_credential_source(home)
        checks = {
            "config": str(CONFIG_PATH),
            "home_dir": str(home) if home else "",
            "credential_source": source.value,
            "credential_paths": source_paths(home, source),
            "platform": platform.platform(),
        }
        print(json.dumps(checks, indent=2))
        return

    if cmd == "config":
        if args.config_cmd == "show":
            print(json.dumps(asdict(cfg), indent=2, default=str))
            return
        if args.config_cmd == "set":
            try:
                set_config_value(cfg, args.key, args.value)
            except ValueError as exc:
                parser.error(str(exc))
            save_config(cfg)
            print(f"updated {args.key}")
            return
        parser.error("config requires show or set")

    parser.error("unknown command")


if __name__ == "__main__":
    main()
