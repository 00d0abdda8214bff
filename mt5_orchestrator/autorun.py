from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from dataclasses import dataclass, replace

from mt5_orchestrator.broker.base import Broker
from mt5_orchestrator.config import OrchestratorConfig, TerminalConfig
from mt5_orchestrator.console import RichConsoleObserver, should_use_rich
from mt5_orchestrator.events import CompositeObserver, LoggingObserver
from mt5_orchestrator.logging_setup import configure_logging
from mt5_orchestrator.monitor import CancelToken, Pacing, VirtualPacing
from mt5_orchestrator.runner import CycleRunner, RunSummary

log = logging.getLogger(__name__)


@dataclass
class AutoRunner:
    """
    Session wrapper around CycleRunner:
    - connects the broker (demo-only enforced for MT5)
    - opens the SQLite journal if db_path is set
    - runs the cycle loop
    - always flattens the symbol and disconnects on the way out

    For tests, use SimBroker with VirtualPacing and a small max_cycles.
    """

    broker: Broker
    config: OrchestratorConfig
    pacing: Pacing
    observer: CompositeObserver

    def run(self) -> RunSummary:
        self.broker.connect()
        store = None
        run_id = None
        summary: RunSummary | None = None
        try:
            if self.config.db_path:
                from mt5_orchestrator.persistence import JournalObserver, SqliteStore

                store = SqliteStore(self.config.db_path)
                run_id = store.start_run(self.config)
                self.observer.add(JournalObserver(store, run_id))

            runner = CycleRunner.from_config(self.config, self.broker, pacing=self.pacing, observer=self.observer)
            summary = runner.run()
            return summary
        finally:
            try:
                self.broker.close_all_for_symbol(self.config.symbol)
            except Exception as exc:
                log.error("Final flatten failed: %s", exc)
            if store is not None and run_id is not None:
                store.end_run(
                    run_id,
                    stop_reason=summary.stop_reason if summary else "error",
                    total_pnl=summary.total_pnl if summary else None,
                )
                store.close()
            self.broker.disconnect()


def _load_dotenv_if_present() -> None:
    if not os.path.exists(".env"):
        return
    with open(".env", "r", encoding="utf-8") as f:
        for raw_line in f:
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            os.environ.setdefault(k.strip(), v.strip().strip('"').strip("'"))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="mt5_orchestrator.autorun",
        description="Adaptive strategy cycle runner for MetaTrader 5 (demo accounts only)",
    )
    p.add_argument("--broker", choices=["mt5", "sim"], default=None, help="Override ORCH_BROKER")
    p.add_argument("--symbol", default=None, help="Override ORCH_SYMBOL")
    p.add_argument("--base-risk", type=float, default=None, help="Override ORCH_BASE_RISK (account currency)")
    p.add_argument("--max-cycles", type=int, default=None, help="Override ORCH_MAX_CYCLES (0 = until stopped)")
    p.add_argument("--inter-cycle-seconds", type=float, default=None)
    p.add_argument("--no-news", action="store_true", help="Disable the news-window condition")
    p.add_argument("--news-times", default=None, help="Comma-separated HH:MM UTC release times")
    p.add_argument("--db-path", default=None, help="Override ORCH_DB_PATH")
    p.add_argument("--log-file", default=None, help="Override ORCH_LOG_FILE")
    p.add_argument("--log-level", default="INFO")
    p.add_argument("--ui", choices=["auto", "plain", "rich"], default="auto", help="Console rendering")
    p.add_argument("--mt5-path", default=None)
    p.add_argument("--mt5-login", type=int, default=None)
    p.add_argument("--mt5-server", default=None)
    p.add_argument("--sim-balance", type=float, default=10_000.0)
    p.add_argument("--sim-start-price", type=float, default=1.10000)
    p.add_argument("--sim-spread-points", type=float, default=2.0)
    p.add_argument("--sim-seed", type=int, default=None)
    return p


def _build_config(args: argparse.Namespace, base: OrchestratorConfig) -> OrchestratorConfig:
    terminal = TerminalConfig(
        path=args.mt5_path or base.terminal.path,
        login=args.mt5_login if args.mt5_login is not None else base.terminal.login,
        password=base.terminal.password,
        server=args.mt5_server or base.terminal.server,
        timeout_ms=base.terminal.timeout_ms,
    )
    return replace(
        base,
        broker=args.broker or base.broker,
        symbol=(args.symbol or base.symbol).upper(),
        base_risk=args.base_risk if args.base_risk is not None else base.base_risk,
        max_cycles=args.max_cycles if args.max_cycles is not None else base.max_cycles,
        inter_cycle_seconds=(
            args.inter_cycle_seconds if args.inter_cycle_seconds is not None else base.inter_cycle_seconds
        ),
        enable_news_mode=base.enable_news_mode and not args.no_news,
        news_times=(
            tuple(t.strip() for t in args.news_times.split(",") if t.strip()) if args.news_times else base.news_times
        ),
        db_path=args.db_path or base.db_path,
        log_file=args.log_file or base.log_file,
        require_demo=True,
        terminal=terminal,
    ).validate()


def _build_broker(cfg: OrchestratorConfig, args: argparse.Namespace, cancel: CancelToken) -> tuple[Broker, Pacing]:
    if cfg.broker == "sim":
        from mt5_orchestrator.broker.sim import EURUSD, RandomWalkFeed, SimBroker

        sim = SimBroker(balance=args.sim_balance, symbols=[replace(EURUSD, symbol=cfg.symbol)])
        pacing = VirtualPacing(cancel=cancel)
        feed = RandomWalkFeed(
            sim,
            cfg.symbol,
            start_mid=args.sim_start_price,
            spread_points=args.sim_spread_points,
            seed=args.sim_seed,
        )
        pacing.on_pause(feed)
        return sim, pacing

    from mt5_orchestrator.broker.mt5 import MT5Broker

    return MT5Broker(cfg.terminal, require_demo=True, magic=cfg.magic), Pacing(cancel)


def main(argv: list[str] | None = None) -> int:
    _load_dotenv_if_present()
    args = build_parser().parse_args(argv)
    cfg = _build_config(args, OrchestratorConfig.from_env())
    configure_logging(level=args.log_level, log_file=cfg.log_file, console=True)

    cancel = CancelToken()

    def _stop(signum, frame):  # pragma: no cover
        log.warning("Signal %s received, stopping after the current poll", signum)
        cancel.cancel()

    previous = signal.signal(signal.SIGINT, _stop)
    try:
        broker, pacing = _build_broker(cfg, args, cancel)
        observer = CompositeObserver([LoggingObserver()])
        console = None
        if should_use_rich(args.ui):
            console = RichConsoleObserver()
            console.header(
                symbol=cfg.symbol,
                broker=cfg.broker,
                base_risk=cfg.base_risk,
                max_cycles=cfg.max_cycles,
                loss_limit=cfg.loss_limit,
            )
            observer.add(console)

        summary = AutoRunner(broker=broker, config=cfg, pacing=pacing, observer=observer).run()
    finally:
        signal.signal(signal.SIGINT, previous)
    if console is not None:
        console.summary(summary)
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
