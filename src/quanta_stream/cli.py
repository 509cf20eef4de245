"""Typer CLI: quanta-stream serve, ingest-news, signals, status."""

from __future__ import annotations

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from quanta_stream.common.log import setup_logging
from quanta_stream.config import get_settings

app = typer.Typer(
    name="quanta-stream",
    help="Real-time crypto quote streaming and sentiment/momentum signals",
    no_args_is_help=True,
)
console = Console()


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", "-l",
        help="Override QUANTA_LOG_LEVEL (DEBUG, INFO, WARNING, ...)",
    ),
) -> None:
    setup_logging(log_level or get_settings().log_level)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port"),
    no_news: bool = typer.Option(False, "--no-news", help="Disable the background news loop"),
) -> None:
    """Connect to exchanges and serve the SSE stream and HTTP endpoints."""
    import uvicorn

    from quanta_stream.pipeline import Pipeline
    from quanta_stream.server import create_app

    settings = get_settings()
    if no_news:
        settings.news_enabled = False

    pipeline = Pipeline.build(settings)
    config = uvicorn.Config(
        create_app(pipeline),
        host=host or settings.host,
        port=port or settings.port,
        log_level="warning",
        access_log=False,
    )
    console.print(
        f"[bold]Serving on http://{config.host}:{config.port}[/bold] "
        f"({', '.join(pipeline.manager.names())})"
    )
    asyncio.run(uvicorn.Server(config).serve())


@app.command(name="ingest-news")
def ingest_news() -> None:
    """Run one news ingestion batch and print a summary."""

    async def _run() -> None:
        from quanta_stream.common.cache import SqliteCache
        from quanta_stream.features.extractor import FeatureExtractor
        from quanta_stream.news.ingestor import NewsIngestor
        from quanta_stream.news.store import ArticleStore

        settings = get_settings()
        extractor = FeatureExtractor()
        cache = SqliteCache(settings.db_path)
        ingestor = NewsIngestor.from_settings(
            settings,
            sentiment_sink=extractor.add_sentiment,
            store=ArticleStore(settings.db_path),
            cache=cache,
        )
        console.print(f"[bold]Fetching news for {len(ingestor.keywords)} keyword(s)...[/bold]")
        report = await ingestor.run_once()
        expired = await cache.prune()

        console.print(f"  Fetched: {report.fetched}")
        console.print(f"  Stored:  [green]{report.stored}[/green]")
        console.print(f"  Skipped: {report.skipped}")
        if report.failed:
            console.print(f"  Failed:  [red]{report.failed}[/red]")
        if expired:
            console.print(f"  [dim]Pruned {expired} expired fingerprint(s)[/dim]")

        for symbol in extractor.symbols():
            scores = extractor.state(symbol).sentiment
            if scores:
                console.print(f"  {symbol}: {len(scores)} score(s), mean {sum(scores) / len(scores):+.2f}")

    asyncio.run(_run())


@app.command()
def signals(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of signals to show"),
    output: str = typer.Option(
        "table", "--output", "-o",
        help="Output format: table, json, csv",
    ),
) -> None:
    """Show recently emitted signals."""
    from quanta_stream.signals.formatters import format_csv, format_json, format_table
    from quanta_stream.signals.tracker import SignalTracker

    async def _run() -> None:
        tracker = SignalTracker(get_settings().db_path)
        recent = await tracker.load_signals(limit)

        if output == "json":
            console.print(format_json(recent))
        elif output == "csv":
            console.print(format_csv(recent))
        else:
            format_table(recent, console)

    asyncio.run(_run())


@app.command()
def status() -> None:
    """Show configured sources, symbols and stored counts."""

    async def _run() -> None:
        from quanta_stream.news.store import ArticleStore
        from quanta_stream.signals.tracker import SignalTracker

        settings = get_settings()
        table = Table(title="Configuration", show_lines=False)
        table.add_column("Setting", style="bold")
        table.add_column("Value")
        table.add_row("Symbols", ", ".join(settings.symbols))
        table.add_row("Stream sources", ", ".join(settings.stream_sources) or "-")
        table.add_row("Poll sources", ", ".join(settings.poll_sources) or "-")
        table.add_row("Cooldown", f"{settings.cooldown_minutes:g} min")
        table.add_row("Volatility band", f"{settings.volatility_min:g} - {settings.volatility_max:g}")
        table.add_row("Database", str(settings.db_path))
        console.print(table)

        summary = await SignalTracker(settings.db_path).get_summary()
        counts = await ArticleStore(settings.db_path).counts()
        console.print(f"  Signals logged:   {summary['total_signals']}")
        for direction, row in sorted(summary["by_direction"].items()):
            console.print(f"    {direction}: {row['count']} (avg score {row['avg_score']:.2f})")
        console.print(f"  Alert policies:   {summary['active_policies']}")
        console.print(f"  Articles stored:  {counts['articles']}")
        console.print(f"  Sentiment scores: {counts['sentiments']}")

    asyncio.run(_run())


if __name__ == "__main__":
    app()
