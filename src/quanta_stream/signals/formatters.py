"""Signal output formatters: Rich table, JSON, CSV, Telegram text."""

from __future__ import annotations

import csv
import io
import json

from rich.console import Console
from rich.table import Table

from quanta_stream.features.extractor import FeatureSet
from quanta_stream.signals.models import AlertPolicy, Direction, Signal

# Characters with meaning in Telegram's legacy Markdown parse mode
_MARKDOWN_SPECIAL = "_*`["


def escape_markdown(text: str) -> str:
    return "".join("\\" + ch if ch in _MARKDOWN_SPECIAL else ch for ch in text)


def format_table(signals: list[Signal], console: Console | None = None) -> None:
    """Print signals as a Rich table, newest first."""
    if console is None:
        console = Console()

    if not signals:
        console.print("[yellow]No signals recorded yet.[/yellow]")
        return

    table = Table(title="Recent Signals", show_lines=True)
    table.add_column("Time (UTC)", width=19)
    table.add_column("Symbol", width=10)
    table.add_column("Dir", style="bold", width=5)
    table.add_column("Score", justify="right", width=6)
    table.add_column("Sent. z", justify="right", width=8)
    table.add_column("r_5s", justify="right", width=9)
    table.add_column("rv_30s", justify="right", width=9)
    table.add_column("Trigger", width=30)

    for s in sorted(signals, key=lambda s: s.timestamp, reverse=True):
        color = "green" if s.direction is Direction.BUY else "red"
        table.add_row(
            s.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            s.symbol,
            f"[{color}]{s.direction.value}[/{color}]",
            f"{s.score:.2f}",
            f"{float(s.reasons.get('sentiment_z', 0.0)):+.2f}",
            f"{float(s.reasons.get('r_5s', 0.0)):+.4%}",
            f"{float(s.reasons.get('rv_30s', 0.0)):.4%}",
            str(s.reasons.get("trigger", "")),
        )

    console.print(table)
    console.print(f"\n[dim]{len(signals)} signal(s) total[/dim]")


def format_json(signals: list[Signal]) -> str:
    """Format signals as a JSON array in wire form."""
    return json.dumps([s.to_dict() for s in signals], indent=2)


def format_csv(signals: list[Signal]) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(["ts", "symbol", "direction", "score", "sentiment_z", "r_5s", "rv_30s", "ofi_proxy", "trigger"])
    for s in signals:
        d = s.to_dict()
        writer.writerow([
            d["ts"], s.symbol, s.direction.value, s.score,
            s.reasons.get("sentiment_z"), s.reasons.get("r_5s"),
            s.reasons.get("rv_30s"), s.reasons.get("ofi_proxy"), s.reasons.get("trigger"),
        ])
    return output.getvalue()


def format_telegram_signal(signal: Signal) -> str:
    """Format a single signal for Telegram (Markdown)."""
    arrow = "\U0001f4c8" if signal.direction is Direction.BUY else "\U0001f4c9"
    r = signal.reasons
    lines = [
        f"{arrow} *{signal.direction.value.upper()}* {signal.symbol} | score {signal.score:.2f}",
        "",
        f"Sentiment z: {float(r.get('sentiment_z', 0.0)):+.2f}",
        f"Momentum (5s): {float(r.get('r_5s', 0.0)):+.3%}",
        f"Volatility (30s): {float(r.get('rv_30s', 0.0)):.3%}",
        f"OFI: {float(r.get('ofi_proxy', 0.0)):+.2f}",
        f"Trigger: {escape_markdown(str(r.get('trigger', '')))}",
    ]
    return "\n".join(lines)


def format_telegram_alert(policy: AlertPolicy, features: FeatureSet) -> str:
    """Format a fired alert policy for Telegram (Markdown)."""
    lines = [
        f"\U0001f514 *ALERT* {policy.symbol}",
        escape_markdown(policy.description) if policy.description else "(no description)",
        "",
        f"Sentiment z: {features.sentiment_z:+.2f} (> {policy.sentiment_threshold:.2f})",
        f"Momentum (5s): {features.r_5s:+.3%} (> {policy.momentum_threshold:.3%})",
        f"Volatility (30s): {features.rv_30s:.3%} in [{policy.volatility_min:.3%}, {policy.volatility_max:.3%}]",
    ]
    return "\n".join(lines)
