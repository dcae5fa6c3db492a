"""Live Rich dashboard for a load run."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from rich import box
from rich.align import Align
from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text

from loadcheck import __version__

from .config import Level
from .observers import LoadObserver


@dataclass
class LevelVisualState:
    """Mutable state for one level's dashboard row."""

    name: str
    population: int
    started_users: int = 0
    completed_users: int = 0
    authenticated: int = 0
    api_calls: int = 0
    api_ok: int = 0
    messages_sent: int = 0
    messages_delivered: int = 0
    latencies: List[float] = field(default_factory=list)
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    status: str = "pending"
    reasons: List[str] = field(default_factory=list)

    def success_rate(self) -> float:
        if not self.api_calls:
            return 0.0
        return self.api_ok / self.api_calls * 100

    def throughput(self) -> float:
        if not self.start_time:
            return 0.0
        duration = (self.end_time or time.time()) - self.start_time
        if duration <= 0:
            return 0.0
        return self.api_calls / duration

    def avg_latency(self) -> float:
        if not self.latencies:
            return 0.0
        return sum(self.latencies) / len(self.latencies)


class LoadDashboard(LoadObserver):
    """Observer rendering per-level progress into a ``rich.live.Live``."""

    def __init__(self, *, enabled: bool = True, console: Optional[Console] = None) -> None:
        self.console = console or Console()
        self.enabled = enabled
        self.mode = ""
        self.states: Dict[int, LevelVisualState] = {}
        self.live: Optional[Live] = None
        self.start_time = time.time()

    def bind(self, live: Live) -> None:
        self.live = live
        self.refresh(force=True)

    def refresh(self, force: bool = False) -> None:
        if not self.enabled or not self.live:
            return
        self.live.update(self.render(), refresh=force)

    def on_run_start(self, mode, levels: Sequence[Level]):
        self.mode = mode
        self.start_time = time.time()
        for index, level in enumerate(levels):
            self.states[index] = LevelVisualState(name=level.name, population=level.population)
        self.refresh(force=True)

    def on_level_start(self, index, level):
        state = self.states.setdefault(index, LevelVisualState(name=level.name, population=level.population))
        state.status = "running"
        state.start_time = time.time()
        self.refresh()

    def on_batch_start(self, index, level, batch, size):
        state = self.states.get(index)
        if state is not None:
            state.started_users += size
            self.refresh()

    def on_user_complete(self, index, result):
        state = self.states.get(index)
        if state is None:
            return
        state.completed_users += 1
        state.authenticated += int(result.authenticated)
        state.api_calls += len(result.api_outcomes)
        state.api_ok += result.successful_api_calls
        state.messages_sent += len(result.message_outcomes)
        state.messages_delivered += result.messages_delivered
        state.latencies.extend(o.latency_ms for o in result.api_outcomes if o.success)
        self.refresh()

    def on_level_complete(self, index, result):
        state = self.states.get(index)
        if state is None:
            return
        state.end_time = time.time()
        state.status = "passed" if result.passed else "failed"
        state.reasons = list(result.reasons)
        self.refresh(force=True)

    def on_run_complete(self, results):
        for state in self.states.values():
            if state.status == "pending":
                state.status = "skipped"
        self.refresh(force=True)

    def render(self) -> RenderableType:
        return Group(self._render_header(), self._render_main())

    def _render_header(self) -> RenderableType:
        grid = Table.grid(expand=True)
        grid.add_column(justify="left", ratio=1)
        grid.add_column(justify="right", ratio=1)

        elapsed = time.time() - self.start_time
        users = sum(s.completed_users for s in self.states.values())
        stats = Text()
        stats.append(f"Mode: {self.mode}  ", style="bold white")
        stats.append(f"Time: {int(elapsed)}s  ", style="bold white")
        stats.append(f"Users done: {users}", style="dim white")

        grid.add_row(Text(f"loadcheck {__version__}", style="bold magenta"), stats)
        return Panel(grid, style="white", box=box.ROUNDED, padding=(0, 1))

    def _render_main(self) -> RenderableType:
        if not self.states:
            return Panel(Align.center("[dim]No levels configured[/dim]"), box=box.ROUNDED)

        table = Table(box=box.SIMPLE, expand=True, header_style="bold dim white")
        table.add_column("Level", ratio=2)
        table.add_column("Status", ratio=1)
        table.add_column("Users", ratio=4)
        table.add_column("API", ratio=3)
        table.add_column("Messages", ratio=2)

        for index in sorted(self.states):
            state = self.states[index]
            bar = ProgressBar(
                total=max(state.population, 1),
                completed=min(state.completed_users, max(state.population, 1)),
                width=30,
                complete_style="green",
                finished_style="green",
            )
            users = Group(bar, Text(f"{state.completed_users}/{state.population} done, {state.authenticated} authenticated", style="dim"))
            api = Text(
                f"{state.api_ok}/{state.api_calls} ok ({state.success_rate():.1f}%)\n"
                f"{state.throughput():.1f} req/s, avg {state.avg_latency():.0f}ms"
            )
            table.add_row(
                Text(state.name, style="bold"),
                Text(state.status, style=_status_color(state.status)),
                users,
                api,
                f"{state.messages_delivered}/{state.messages_sent}",
            )
        return table


def _status_color(status: str) -> str:
    return {
        "running": "yellow",
        "passed": "green",
        "failed": "red",
        "skipped": "dim",
    }.get(status, "white")
