"""Rich-powered console reports for stored article durations."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional

from rich import box
from rich.columns import Columns
from rich.console import Console, Group
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from ..services.durations import format_duration, is_suspicious_duration
from ..services.repair import SweepSummary
from ..services.storage import ArticleRecord, ArticleRepository


@dataclass
class DurationSnapshot:
    articles: List[ArticleRecord]
    suspicious_count: int
    method_totals: Dict[str, int]


class DurationReportUI:
    """Render stored durations, highlighting values that look like fallbacks."""

    def __init__(self, repository: ArticleRepository, *, console: Optional[Console] = None) -> None:
        self._repository = repository
        self._console = console or Console()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def run(self, *, suspicious_only: bool = False) -> DurationSnapshot:
        snapshot = self._collect_snapshot(suspicious_only=suspicious_only)
        console = self._console

        console.rule("[bold magenta]Audio Article Durations")

        if not snapshot.articles:
            console.print(
                Panel(
                    "No articles match.\n"
                    "Upload audio through [bold]POST /api/articles[/bold] to add one.",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return snapshot

        console.print(
            Columns(
                [self._build_table(snapshot.articles), self._build_stats_panel(snapshot)],
                expand=True,
            )
        )
        if snapshot.suspicious_count:
            console.print(
                Text(
                    "Tip: run [bold]python run.py bulk-fix[/bold] to re-measure suspicious durations.",
                    style="dim",
                ),
                justify="center",
            )
        return snapshot

    def render_sweep(self, summary: SweepSummary) -> None:
        table = Table(title="Bulk duration fix", box=box.SIMPLE_HEAVY, expand=True)
        table.add_column("Title", style="white")
        table.add_column("Old", justify="right")
        table.add_column("New", justify="right")
        table.add_column("Result")
        for result in summary.results:
            outcome = (
                Text("fixed", style="green")
                if result.success
                else Text(result.error or "failed", style="red")
            )
            table.add_row(
                result.title,
                format_duration(result.old_seconds),
                format_duration(result.new_seconds) if result.new_seconds else "-",
                outcome,
            )
        self._console.print(table)
        self._console.print(
            f"Processed [bold]{summary.processed}[/bold] article(s): "
            f"[green]{summary.succeeded} fixed[/green], [red]{summary.failed} failed[/red]"
        )

    # ------------------------------------------------------------------
    # Rendering helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _build_table(articles: List[ArticleRecord]) -> Table:
        table = Table(box=box.ROUNDED, expand=True, header_style="bold cyan")
        table.add_column("Title")
        table.add_column("Duration", justify="right")
        table.add_column("Seconds", justify="right", style="dim")
        table.add_column("Method")
        table.add_column("Plays", justify="right", style="dim")
        for article in articles:
            suspicious = is_suspicious_duration(article.duration_seconds)
            style = "yellow" if suspicious else None
            table.add_row(
                Text(article.title, style=style or "white"),
                Text(format_duration(article.duration_seconds), style=style or "bold"),
                str(article.duration_seconds if article.duration_seconds is not None else "-"),
                Text(article.duration_method or "unknown", style=style or "green"),
                str(article.play_count),
            )
        return table

    @staticmethod
    def _build_stats_panel(snapshot: DurationSnapshot) -> Panel:
        metrics = Table.grid(expand=True, padding=(0, 1))
        metrics.add_column(style="dim")
        metrics.add_column(justify="right", style="bold")
        metrics.add_row("Articles", str(len(snapshot.articles)))
        metrics.add_row("Suspicious", str(snapshot.suspicious_count))

        methods = Table.grid(expand=True, padding=(0, 1))
        methods.add_column(style="dim")
        methods.add_column(justify="right", style="bold")
        for method, count in sorted(snapshot.method_totals.items()):
            methods.add_row(method, str(count))

        body = Group(metrics, Rule(style="magenta"), methods)
        return Panel(body, title="At a glance", border_style="magenta", box=box.ROUNDED)

    # ------------------------------------------------------------------
    # Data aggregation
    # ------------------------------------------------------------------
    def _collect_snapshot(self, *, suspicious_only: bool) -> DurationSnapshot:
        if suspicious_only:
            articles = list(self._repository.iter_suspicious_articles())
        else:
            articles = list(self._repository.iter_articles())
        suspicious_count = sum(1 for article in articles if is_suspicious_duration(article.duration_seconds))
        method_totals = Counter(article.duration_method or "unknown" for article in articles)
        return DurationSnapshot(
            articles=articles,
            suspicious_count=suspicious_count,
            method_totals=dict(method_totals),
        )


__all__ = ["DurationReportUI", "DurationSnapshot"]
