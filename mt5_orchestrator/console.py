from __future__ import annotations

from typing import Any

from mt5_orchestrator.events import OrchestratorObserver
from mt5_orchestrator.types import Outcome

_OUTCOME_STYLE = {
    Outcome.UPWARD: "green",
    Outcome.DOWNWARD: "green",
    Outcome.BOTH: "yellow",
    Outcome.HEDGED: "yellow",
    Outcome.TIMEOUT: "dim",
    Outcome.NOT_HEDGED: "dim",
    Outcome.PRIMARY_CLOSED: "dim",
    Outcome.CANCELLED: "dim",
    Outcome.FAILED: "red",
    Outcome.CONFIG_ERROR: "red",
    Outcome.ERROR: "bold red",
}


def should_use_rich(mode: str) -> bool:
    mode = str(mode or "auto").strip().lower()
    if mode == "plain":
        return False
    if mode == "rich":
        return True
    try:  # pragma: no cover
        import rich  # noqa: F401

        return True
    except Exception:
        return False


def _pnl(value: float) -> str:
    color = "green" if value > 0 else "red" if value < 0 else "white"
    return f"[{color}]{value:+.2f}[/{color}]"


class RichConsoleObserver(OrchestratorObserver):
    """Renders cycle and engine activity to the terminal with rich."""

    def __init__(self, console: Any | None = None) -> None:
        if console is None:
            from rich.console import Console

            console = Console()
        self._console = console

    def header(self, *, symbol: str, broker: str, base_risk: float, max_cycles: int, loss_limit: float) -> None:
        from rich.panel import Panel
        from rich.table import Table

        t = Table.grid(expand=True)
        t.add_column()
        t.add_column(justify="right")
        t.add_row("symbol", symbol)
        t.add_row("broker", broker)
        t.add_row("base_risk", f"{base_risk:.2f}")
        t.add_row("max_cycles", str(max_cycles) if max_cycles else "unbounded")
        t.add_row("loss_limit", f"{loss_limit:.2f}")
        self._console.print(Panel(t, title="MT5 Orchestrator", border_style="cyan"))

    def on_order_placed(self, intent, result):
        self._console.print(
            f"[cyan]#{result.ticket}[/cyan] {intent.kind.name} {intent.volume} @ {intent.price} "
            f"sl={intent.stop_loss} tp={intent.take_profit} [dim]{intent.tag}[/dim]"
        )

    def on_placement_failed(self, intent, result):
        self._console.print(f"[red]rejected[/red] {intent.kind.name} {intent.tag} retcode={result.retcode}")

    def on_fill_detected(self, engine, outcome, tickets):
        style = _OUTCOME_STYLE.get(outcome, "white")
        self._console.print(f"[{style}]{engine}: {outcome.value}[/{style}] tickets={list(tickets)}")

    def on_hedge_placed(self, primary_ticket, hedge_ticket, movement_points):
        self._console.print(
            f"[yellow]hedge #{hedge_ticket}[/yellow] against #{primary_ticket} at {movement_points:.1f} pts adverse"
        )

    def on_progress(self, engine, running_pnl):
        self._console.print(f"[dim]{engine} running P/L[/dim] {_pnl(running_pnl)}")

    def on_cycle_started(self, cycle, assessment):
        self._console.rule(
            f"Cycle {cycle}: {assessment.condition.name} "
            f"(vol {assessment.volatility_points:.1f}, spread {assessment.spread_points:.1f})"
        )

    def on_cycle_complete(self, result, total_pnl):
        style = _OUTCOME_STYLE.get(result.outcome, "white")
        self._console.print(
            f"cycle {result.cycle} [{style}]{result.outcome.value}[/{style}] "
            f"P/L {_pnl(result.realized_pnl)} total {_pnl(total_pnl)}"
        )

    def on_circuit_breaker(self, total_pnl, limit):
        self._console.print(f"[bold red]circuit breaker[/bold red] total {total_pnl:.2f} < {limit:.2f}")

    def on_error(self, where, exc):
        self._console.print(f"[bold red]{where}[/bold red]: {exc}")

    def summary(self, summary) -> None:
        from rich.table import Table

        table = Table(title="Run Summary", show_lines=True)
        table.add_column("cycle", justify="right")
        table.add_column("condition")
        table.add_column("outcome")
        table.add_column("P/L", justify="right")
        for r in summary.results:
            table.add_row(
                str(r.cycle),
                r.condition.name if r.condition is not None else "-",
                r.outcome.value,
                _pnl(r.realized_pnl),
            )
        self._console.print(table)
        self._console.print(
            f"balance {summary.initial_balance:.2f} -> {summary.final_balance:.2f}  "
            f"total {_pnl(summary.total_pnl)}  stop: {summary.stop_reason}"
        )
