"""Run report container and renderers."""

from typing import TYPE_CHECKING, Any, Dict, List, Optional
from datetime import datetime
import json
import csv
from pathlib import Path
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

if TYPE_CHECKING:
    from .scheduler import LevelResult
    from .verdict import RunVerdict


console = Console()

ASSESSMENT_STYLES = {"EXCELLENT": "green", "GOOD": "yellow", "LIMITED": "red"}

CSV_FIELDS = [
    "name",
    "population",
    "api_calls_per_actor",
    "messages_per_actor",
    "authenticated_count",
    "auth_rate",
    "channels_opened",
    "channels_dropped",
    "api_calls",
    "successful_api_calls",
    "success_rate",
    "throughput",
    "avg_latency",
    "p95_latency",
    "messages_sent",
    "messages_delivered",
    "delivery_rate",
    "elapsed_seconds",
    "abandoned_users",
    "peak_concurrent_users",
    "passed",
    "reasons",
]


class RunReport:
    """Ordered level results plus the run verdict."""

    def __init__(
        self,
        mode: str,
        levels: List["LevelResult"],
        verdict: "RunVerdict",
        settings: Optional[Dict[str, Any]] = None,
        started_at: Optional[float] = None,
        ended_at: Optional[float] = None,
        resources: Optional[Dict[str, Any]] = None,
    ):
        self.mode = mode
        self.levels = levels
        self.verdict = verdict
        self.settings = settings or {}
        self.started_at = started_at
        self.ended_at = ended_at
        self.resources = resources

    @property
    def all_claims_verified(self) -> bool:
        return self.verdict.all_claims_verified

    @property
    def duration(self) -> float:
        if self.started_at is None or self.ended_at is None:
            return 0.0
        return self.ended_at - self.started_at

    def _format_duration(self, seconds: float) -> str:
        seconds = int(seconds)
        if seconds < 60:
            return f"{seconds}s"
        minutes, secs = divmod(seconds, 60)
        if minutes < 60:
            return f"{minutes}m {secs}s" if secs else f"{minutes}m"
        hours, minutes = divmod(minutes, 60)
        return f"{hours}h {minutes}m" if minutes else f"{hours}h"

    def print_summary(self, output: Optional[Console] = None):
        """Print a rich formatted summary to the console."""
        from rich.console import Group
        from rich.rule import Rule
        from rich.box import ROUNDED

        out = output or console

        table = Table(box=ROUNDED, show_header=True, header_style="bold", expand=True)
        table.add_column("Level", style="cyan")
        table.add_column("Users", justify="right")
        table.add_column("Peak", justify="right")
        table.add_column("Auth", justify="right")
        table.add_column("API ok", justify="right")
        table.add_column("Success", justify="right", style="yellow")
        table.add_column("Req/s", justify="right")
        table.add_column("Avg", justify="right")
        table.add_column("p95", justify="right")
        table.add_column("Msgs", justify="right")
        table.add_column("Result", justify="center")

        for level in self.levels:
            table.add_row(
                level.name,
                str(level.population),
                str(level.peak_concurrent_users),
                f"{level.authenticated_count}/{level.population} ({level.auth_rate:.0f}%)",
                f"{level.successful_api_calls}/{level.api_calls}",
                f"{level.success_rate:.1f}%",
                f"{level.throughput:.1f}",
                f"{level.avg_latency:.0f}ms",
                f"{level.p95_latency:.0f}ms",
                f"{level.messages_delivered}/{level.messages_sent} ({level.delivery_rate:.0f}%)",
                "[green]PASS[/green]" if level.passed else "[red]FAIL[/red]",
            )

        header_line = (
            f"[bold]Mode:[/bold] {self.mode} │ "
            f"[bold]Duration:[/bold] {self._format_duration(self.duration)} │ "
            f"[bold]Levels run:[/bold] {len(self.levels)}"
        )
        content_parts: List[Any] = [header_line, Rule(style="dim"), table]

        capacity = self.verdict.max_capacity
        content_parts.append(Rule(style="dim"))
        if capacity:
            content_parts.append(
                f"[bold]Maximum capacity:[/bold] {capacity['users']} users ({capacity['level']}), "
                f"{capacity['throughput']:.1f} req/s, {capacity['success_rate']:.1f}% success"
            )
        else:
            content_parts.append("[bold]Maximum capacity:[/bold] no level passed")
        assessment = "  ".join(
            f"{name}: [{ASSESSMENT_STYLES.get(tier, 'white')}]{tier}[/]"
            for name, tier in self.verdict.assessment.items()
        )
        if assessment:
            content_parts.append(f"[bold]Assessment:[/bold] {assessment}")
        content_parts.append(
            f"[bold]Overall score:[/bold] {self.verdict.overall_score * 100:.1f}% ({self.verdict.score_label})"
        )

        if self.resources:
            content_parts.append(
                f"[bold]Harness resources:[/bold] peak RSS {self.resources.get('peak_rss_mb', 0):.1f}MB, "
                f"peak CPU {self.resources.get('peak_cpu_percent', 0):.0f}%"
            )

        if self.verdict.reasons:
            content_parts.extend([Rule(style="dim"), "[red]Failed checks:[/red]"])
            content_parts.extend(f"  - {reason}" for reason in self.verdict.reasons)
        if self.verdict.suggestions:
            content_parts.append("[yellow]Suggestions:[/yellow]")
            content_parts.extend(f"  - {s}" for s in self.verdict.suggestions)

        verified = self.verdict.all_claims_verified
        panel = Panel(
            Group(*content_parts),
            title="[bold green]All claims verified[/bold green]" if verified else "[bold red]Claims not verified[/bold red]",
            expand=False,
            border_style="green" if verified else "red",
            padding=(1, 3),
            width=120,
        )
        out.print(panel)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the report to a JSON-ready dictionary."""
        return {
            "mode": self.mode,
            "start_time": datetime.fromtimestamp(self.started_at).isoformat() if self.started_at else None,
            "end_time": datetime.fromtimestamp(self.ended_at).isoformat() if self.ended_at else None,
            "duration": self.duration,
            "all_claims_verified": self.all_claims_verified,
            "verdict": self.verdict.to_dict(),
            "levels": [level.to_dict() for level in self.levels],
            "settings": self.settings,
            "resources": self.resources,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str, ensure_ascii=False)

    def _default_path(self, suffix: str) -> str:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return f"loadcheck_{self.mode}_{timestamp}.{suffix}"

    def save_json(self, filepath: Optional[str] = None) -> str:
        """
        Save the report to a JSON file.

        Args:
            filepath: Optional custom filepath. If not provided, generates one.

        Returns:
            Path to the saved file
        """
        path = Path(filepath or self._default_path("json"))
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(self.to_json())
        console.print(f"[blue]Report saved to:[/blue] {path}")
        return str(path)

    def save_csv(self, filepath: Optional[str] = None) -> str:
        """Save one row per level to a CSV file."""
        path = Path(filepath or self._default_path("csv"))
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=CSV_FIELDS)
            writer.writeheader()
            for level in self.levels:
                row = {key: value for key, value in level.to_dict().items() if key in CSV_FIELDS}
                row["reasons"] = "; ".join(level.reasons)
                writer.writerow(row)
        console.print(f"[blue]Report saved to:[/blue] {path}")
        return str(path)

    def save(self, format: str = "json", filepath: Optional[str] = None) -> str:
        """Save in ``json`` or ``csv`` format."""
        if format == "json":
            return self.save_json(filepath)
        if format == "csv":
            return self.save_csv(filepath)
        raise ValueError(f"Unsupported format: {format}. Use 'json' or 'csv'.")
