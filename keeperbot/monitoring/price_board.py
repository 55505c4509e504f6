"""Console price board for the feeder's periodic report."""

from __future__ import annotations

from typing import Any, Iterable, Optional

from rich.console import Console
from rich.table import Table


def _change_cell(change) -> str:
    if change > 0:
        return f"[green]+{change}%[/green]"
    if change < 0:
        return f"[red]{change}%[/red]"
    return f"{change}%"


class PriceBoard:
    def __init__(self, console: Optional[Console] = None, title: str = "Oracle prices") -> None:
        self.console = console or Console(stderr=True)
        self.title = title

    def build(self, stats: Iterable[Any], errors: Iterable[Any] = (), window: int = 24) -> Table:
        table = Table(title=self.title, caption=f"min/max over last {window} updates")
        table.add_column("Symbol", style="bold")
        table.add_column("Price", justify="right")
        table.add_column("Change", justify="right")
        table.add_column("Min", justify="right")
        table.add_column("Max", justify="right")
        for s in stats:
            table.add_row(s.symbol, str(s.current), _change_cell(s.change_pct), str(s.window_min), str(s.window_max))

        errors = list(errors)
        if errors:
            table.add_section()
            for err in errors[-3:]:
                table.add_row(err.symbol, "[yellow]error[/yellow]", err.kind.value, "", err.message[:40])
        return table

    def render(self, stats: Iterable[Any], errors: Iterable[Any] = (), window: int = 24) -> None:
        self.console.print(self.build(stats, errors, window))
