"""autopilot.cli

Command line interface entry point for the CPPI autopilot.

Design constraints:
- argparse-based.
- Lazy imports: do not import heavy dependencies at parse time.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

EPILOG = "The floor only goes up."


@dataclass(frozen=True)
class CliContext:
    repo_root: Path


def _repo_root_from_cwd() -> Path:
    return Path.cwd()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cppi-autopilot",
        description="Constant proportion portfolio insurance autopilot.",
        epilog=EPILOG,
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit.",
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("status", help="Print system status")
    sub.add_parser("strategies", help="List the strategy catalog")

    p_pos = sub.add_parser("positions", help="List open positions from the journal")
    p_pos.add_argument("--owner", default=None)
    p_pos.add_argument("--json", action="store_true", help="Emit JSON")

    p_sim = sub.add_parser("simulate", help="Run a position through a value path with the paper executor")
    p_sim.add_argument("--strategy", default="cppi_balanced")
    p_sim.add_argument("--principal", default="10000")
    p_sim.add_argument("--floor", default=None, help="Custom floor (absolute amount)")
    p_sim.add_argument(
        "--path",
        default=None,
        help="Comma separated risky-leg returns, e.g. 0.02,-0.05,0.01. Random walk if omitted.",
    )
    p_sim.add_argument("--steps", type=int, default=30)
    p_sim.add_argument("--vol", type=float, default=0.6, help="Annualized vol of the random walk")
    p_sim.add_argument("--seed", type=int, default=7)
    p_sim.add_argument("--json", action="store_true", help="Emit JSON")

    p_api = sub.add_parser("api", help="Start FastAPI server")
    p_api.add_argument("--host", default=None)
    p_api.add_argument("--port", type=int, default=None)

    return parser


def _print_version() -> None:
    from autopilot import __version__

    print(f"cppi-autopilot v{__version__}")


def _load_config(ctx: CliContext):
    from autopilot.core.config import Config
    from autopilot.core.logging import configure_logging

    config = Config.load(ctx.repo_root)
    configure_logging(config.logging)
    return config


def _cmd_status(ctx: CliContext, args: argparse.Namespace) -> int:
    from autopilot.core.exceptions import ConfigError

    repo_root = ctx.repo_root
    cfg_user = repo_root / "config" / "user.yaml"
    cfg = cfg_user if cfg_user.exists() else repo_root / "config" / "default.yaml"

    try:
        config = _load_config(ctx)
        config_status = f"{cfg} (preset: {config.preset})" if cfg.exists() else "built-in defaults"
        n_strategies = len(config.strategies)
    except (ConfigError, ValueError) as e:
        config_status = f"{cfg} (error: {e})"
        n_strategies = 0

    db_path = repo_root / "data" / "autopilot.db"
    db_status = "present" if db_path.exists() else "missing"
    journal_status = None
    chain_ok = True
    if db_path.exists():
        from autopilot.core.database import Database

        db = Database(db_path)
        try:
            chain_ok = db.verify_hash_chain()
            last = db.get_events(limit=1)
        finally:
            db.close()
        last_type = str(last[0].type) if last else "none"
        journal_status = f"hash chain {'ok' if chain_ok else 'BROKEN'}, last event {last_type}"

    print("cppi-autopilot status")
    print(f"- config: {config_status}")
    print(f"- strategies: {n_strategies}")
    print(f"- db: {db_path} ({db_status})")
    if journal_status is not None:
        print(f"- journal: {journal_status}")
    return 0 if chain_ok else 1


def _cmd_strategies(ctx: CliContext, args: argparse.Namespace) -> int:
    from autopilot.core.catalog import StrategyCatalog

    config = _load_config(ctx)
    catalog = StrategyCatalog.from_configs(config.strategies)
    for s in catalog.values():
        cap = f" cap={s.cap}" if s.cap is not None else ""
        ratchet = " ratchet" if s.ratchet_enabled else ""
        print(
            f"{s.id:<20} m={s.multiplier} floor={s.floor_ratio} "
            f"threshold={s.rebalance_threshold}{cap}{ratchet} [{s.risk_level}]"
        )
    return 0


def _cmd_positions(ctx: CliContext, args: argparse.Namespace) -> int:
    from autopilot.core.database import Database
    from autopilot.execution.engine import AutopilotEngine
    from autopilot.execution.queries import PositionQueries

    config = _load_config(ctx)
    db_path = ctx.repo_root / "data" / "autopilot.db"
    if not db_path.exists():
        print(f"error: no journal at {db_path}", file=sys.stderr)
        return 1

    db = Database(db_path)
    try:
        engine = AutopilotEngine.from_config(config, db=db, restore=True)
        views = PositionQueries(engine.ledger).positions_by_owner(args.owner)
    finally:
        db.close()

    if args.json:
        print(json.dumps([v.to_dict() for v in views], indent=2))
        return 0
    for v in views:
        p = v.position
        print(
            f"{p.id} {p.strategy_id:<18} value={p.current_value} floor={p.guaranteed_floor} "
            f"risky={p.risky_exposure} {v.health.status} ({p.state})"
        )
    return 0


def _random_returns(*, steps: int, vol: float, seed: int) -> list[float]:
    import numpy as np

    rng = np.random.default_rng(seed)
    daily = float(vol) / np.sqrt(365.0)
    return [float(x) for x in rng.normal(0.0, daily, size=int(steps))]


def _cmd_simulate(ctx: CliContext, args: argparse.Namespace) -> int:
    from datetime import timedelta
    from decimal import Decimal

    from autopilot.brain.volatility import signal_from_values
    from autopilot.core.exceptions import AutopilotError
    from autopilot.core.time import utc_now
    from autopilot.core.types import ValuationTick
    from autopilot.execution.engine import AutopilotEngine
    from autopilot.execution.paper import PaperExecutor

    config = _load_config(ctx)

    if args.path:
        try:
            returns = [float(x) for x in str(args.path).split(",") if x.strip()]
        except ValueError:
            print(f"error: --path must be comma separated numbers: {args.path}", file=sys.stderr)
            return 2
    else:
        returns = _random_returns(steps=args.steps, vol=args.vol, seed=args.seed)

    engine = AutopilotEngine.from_config(config, executor=PaperExecutor(config=config.paper))
    start = utc_now()
    try:
        pid = engine.open_position(args.strategy, args.principal, args.floor, owner="simulator", now=start)
    except AutopilotError as e:
        print(f"error: {e.message}", file=sys.stderr)
        return 2

    rows: list[dict] = []
    risky_path: list[Decimal] = [Decimal(1)]
    for i, r in enumerate(returns, start=1):
        now = start + timedelta(days=i)
        p = engine.ledger.get(pid)
        move = p.risky_exposure * Decimal(str(r))
        risky_path.append(risky_path[-1] * (1 + Decimal(str(r))))
        signal = signal_from_values(risky_path[-20:], observed_at=now)
        tick = ValuationTick(position_id=pid, value=p.current_value + move, as_of=now)
        out = engine.on_tick(tick, volatility=signal, now=now)
        after = engine.ledger.get(pid)
        rows.append(
            {
                "step": i,
                "return": r,
                "value": str(after.current_value),
                "floor": str(after.guaranteed_floor),
                "safe": str(after.safe_exposure),
                "risky": str(after.risky_exposure),
                "status": out.status,
                "trigger": str(out.instruction.reason) if out.instruction else None,
            }
        )

    health = engine.health(pid)
    settlement = engine.close_position(pid, now=start + timedelta(days=len(returns) + 1))
    summary = {
        "position_id": pid,
        "strategy_id": settlement.strategy_id,
        "principal": str(settlement.principal),
        "final_value": str(settlement.final_value),
        "guaranteed_floor": str(settlement.guaranteed_floor),
        "total_return": str(settlement.total_return),
        "max_drawdown": str(settlement.max_drawdown),
        "rebalance_count": settlement.rebalance_count,
        "health_at_close": str(health.status),
    }

    if args.json:
        print(json.dumps({"steps": rows, "settlement": summary}, indent=2))
        return 0

    for row in rows:
        trig = f" <- {row['trigger']}" if row["trigger"] else ""
        print(
            f"{row['step']:>4} r={row['return']:+.4f} value={Decimal(row['value']):.2f} "
            f"floor={Decimal(row['floor']):.2f} risky={Decimal(row['risky']):.2f} {row['status']}{trig}"
        )
    print(
        f"settled {summary['position_id']}: final={Decimal(summary['final_value']):.2f} "
        f"return={Decimal(summary['total_return']):.4f} rebalances={summary['rebalance_count']}"
    )
    return 0


def _cmd_api(ctx: CliContext, args: argparse.Namespace) -> int:
    config = _load_config(ctx)

    host = args.host or config.api.host
    port = args.port or config.api.port

    import uvicorn

    uvicorn.run("api.main:app", host=host, port=port, reload=False)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        _print_version()
        return 0

    if not args.command:
        parser.print_help()
        return 2

    ctx = CliContext(repo_root=_repo_root_from_cwd())

    dispatch: dict[str, Callable[[CliContext, argparse.Namespace], int]] = {
        "status": _cmd_status,
        "strategies": _cmd_strategies,
        "positions": _cmd_positions,
        "simulate": _cmd_simulate,
        "api": _cmd_api,
    }

    fn = dispatch.get(str(args.command))
    if fn is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 2

    return int(fn(ctx, args))


if __name__ == "__main__":
    raise SystemExit(main())
