"""CLI entry point for the swapdesk settlement engine.

Commands:
  swapdesk orders create|cancel|list|monitor|execute
  swapdesk predictions create|join|list|resolve|execute-trades
  swapdesk wallet positions|pnl|tax-report|record-swap
  swapdesk scheduler run-once|start
  swapdesk api             Launch the HTTP trigger/API server
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from swapdesk.config import AppConfig, is_live_execution_enabled, load_config
from swapdesk.engine.errors import SwapdeskError
from swapdesk.observability.logger import configure_logging, get_logger
from swapdesk.services import Services, build_services, run_with_services
from swapdesk.storage.models import OrderStatus, PoolStatus

load_dotenv()

console = Console()
log = get_logger(__name__)


def _run(ctx: click.Context, fn: Callable[[Services], Awaitable[Any]]) -> Any:
    """Build services, run ``fn`` and map engine errors to exit code 1."""
    cfg: AppConfig = ctx.obj["config"]
    try:
        return asyncio.run(run_with_services(lambda: build_services(cfg), fn))
    except SwapdeskError as e:
        console.print(f"[red]❌ {type(e).__name__}: {e}[/red]")
        sys.exit(1)


def _fmt_ts(ts: float | None) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data, indent=2, default=str))


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Conditional orders, prediction pools and wallet PnL."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    configure_logging(cfg.observability, fmt="console", force=True)


# ─── ORDERS ──────────────────────────────────────────────────────────

@cli.group()
def orders() -> None:
    """Conditional (limit / stop) orders."""


@orders.command("create")
@click.option("--wallet", "wallet_address", required=True)
@click.option("--type", "order_type", required=True,
              type=click.Choice(["LIMIT_BUY", "LIMIT_SELL", "STOP_LOSS", "STOP_LIMIT"],
                                case_sensitive=False))
@click.option("--token-in", required=True)
@click.option("--token-out", required=True)
@click.option("--amount", "amount_in", required=True, type=float)
@click.option("--target", "target_price", type=float, default=None)
@click.option("--stop", "stop_price", type=float, default=None)
@click.option("--limit", "limit_price", type=float, default=None)
@click.option("--slippage-bps", type=int, default=None)
@click.option("--gtc", is_flag=True, help="Good till cancelled (no expiry)")
@click.pass_context
def orders_create(ctx: click.Context, **kwargs: Any) -> None:
    """Create a PENDING conditional order."""
    gtc = kwargs.pop("gtc")

    async def _create(s: Services) -> Any:
        return s.orders.create_order(good_till_cancel=gtc, **kwargs)

    order = _run(ctx, _create)
    console.print(f"[green]✓ Order {order.id} created ({order.order_type}, {order.status.value})[/green]")


@orders.command("cancel")
@click.argument("order_id")
@click.option("--wallet", required=True)
@click.pass_context
def orders_cancel(ctx: click.Context, order_id: str, wallet: str) -> None:
    """Cancel a PENDING order you own."""
    async def _cancel(s: Services) -> Any:
        return s.orders.cancel_order(order_id, wallet)

    _run(ctx, _cancel)
    console.print(f"[green]✓ Order {order_id} cancelled[/green]")


@orders.command("list")
@click.option("--wallet", required=True)
@click.option("--status", type=click.Choice([s.value for s in OrderStatus]), default=None)
@click.option("--limit", default=50)
@click.pass_context
def orders_list(ctx: click.Context, wallet: str, status: str | None, limit: int) -> None:
    async def _list(s: Services) -> Any:
        return s.orders.list_orders(wallet, OrderStatus(status) if status else None, limit)

    rows = _run(ctx, _list)
    table = Table(title=f"📋 Orders for {wallet[:10]}… ({len(rows)})")
    table.add_column("ID", style="dim", max_width=10)
    table.add_column("Type", style="cyan")
    table.add_column("Status")
    table.add_column("Amount", justify="right")
    table.add_column("Trigger", justify="right", style="yellow")
    table.add_column("Last price", justify="right")
    table.add_column("Checks", justify="right")
    table.add_column("Expires")
    for o in rows:
        trigger = getattr(o, "target_price", None) or getattr(o, "stop_price", None)
        table.add_row(
            o.id[:10], o.order_type, o.status.value, f"{o.amount_in:g}",
            f"{trigger:g}" if trigger else "-",
            f"{o.last_price:.6g}" if o.last_price else "-",
            str(o.check_count), _fmt_ts(o.expires_at),
        )
    console.print(table)


@orders.command("monitor")
@click.pass_context
def orders_monitor(ctx: click.Context) -> None:
    """Run one monitor pass."""
    async def _monitor(s: Services) -> Any:
        return await s.orders.monitor_orders()

    _print_json(_run(ctx, _monitor).to_dict())


@orders.command("execute")
@click.pass_context
def orders_execute(ctx: click.Context) -> None:
    """Run one execute pass over claimed orders."""
    if not is_live_execution_enabled():
        console.print("[yellow]⚠ ENABLE_LIVE_EXECUTION is off: claimed orders go to PENDING_EXECUTION[/yellow]")

    async def _execute(s: Services) -> Any:
        return await s.orders.execute_orders()

    _print_json(_run(ctx, _execute).to_dict())


# ─── PREDICTIONS ─────────────────────────────────────────────────────

@cli.group()
def predictions() -> None:
    """PUMP / DUMP prediction pools."""


@predictions.command("create")
@click.option("--token", "token_address", required=True)
@click.option("--type", "prediction_type", required=True,
              type=click.Choice(["PUMP", "DUMP"], case_sensitive=False))
@click.option("--threshold", required=True, type=float, help="Percent move, 1-100")
@click.option("--timeframe", "timeframe_minutes", required=True, type=int, help="Minutes (>= 60)")
@click.option("--creator", "creator_address", default=None)
@click.option("--symbol", "token_symbol", default="")
@click.option("--no-auto-trades", is_flag=True)
@click.pass_context
def predictions_create(ctx: click.Context, no_auto_trades: bool, **kwargs: Any) -> None:
    async def _create(s: Services) -> Any:
        return await s.predictions.create_pool(auto_execute_trades=not no_auto_trades, **kwargs)

    pool = _run(ctx, _create)
    console.print(
        f"[green]✓ Pool {pool.id} created[/green] start=${pool.start_price:.6g} "
        f"ends {_fmt_ts(pool.end_time)} max bet ${pool.max_bet_size:,.0f}"
    )


@predictions.command("join")
@click.argument("pool_id")
@click.option("--wallet", required=True)
@click.option("--stake", required=True, type=float, help="USD stake")
@click.option("--prediction", required=True, type=click.Choice(["YES", "NO"], case_sensitive=False))
@click.pass_context
def predictions_join(ctx: click.Context, pool_id: str, wallet: str, stake: float, prediction: str) -> None:
    async def _join(s: Services) -> Any:
        return s.predictions.join_pool(pool_id, wallet, stake, prediction)

    pool = _run(ctx, _join)
    console.print(f"[green]✓ Joined {pool_id}[/green] total staked ${pool.total_staked:,.2f}")


@predictions.command("list")
@click.option("--status", type=click.Choice([s.value for s in PoolStatus]), default=None)
@click.option("--limit", default=50)
@click.pass_context
def predictions_list(ctx: click.Context, status: str | None, limit: int) -> None:
    async def _list(s: Services) -> Any:
        return s.predictions.list_pools(PoolStatus(status) if status else None, limit)

    pools = _run(ctx, _list)
    table = Table(title=f"🎯 Prediction pools ({len(pools)})")
    table.add_column("ID", style="dim", max_width=10)
    table.add_column("Token", max_width=12)
    table.add_column("Type", style="cyan")
    table.add_column("Threshold", justify="right")
    table.add_column("Status")
    table.add_column("Staked", justify="right", style="green")
    table.add_column("Players", justify="right")
    table.add_column("Outcome")
    table.add_column("Ends")
    for p in pools:
        table.add_row(
            p.id[:10], p.token_symbol or p.token_address[:10], p.prediction_type.value,
            f"{p.threshold:g}%", f"{p.status.value}/{p.execution_status.value}",
            f"${p.total_staked:,.2f}", str(len(p.participants)),
            p.outcome.value if p.outcome else "-", _fmt_ts(p.end_time),
        )
    console.print(table)


@predictions.command("resolve")
@click.argument("pool_id", required=False)
@click.pass_context
def predictions_resolve(ctx: click.Context, pool_id: str | None) -> None:
    """Resolve one pool, or every expired pool when no id is given."""
    async def _resolve(s: Services) -> Any:
        if pool_id:
            return (await s.predictions.resolve_pool(pool_id)).model_dump(mode="json")
        return (await s.predictions.resolve_expired_pools()).to_dict()

    _print_json(_run(ctx, _resolve))


@predictions.command("execute-trades")
@click.argument("pool_id", required=False)
@click.pass_context
def predictions_execute_trades(ctx: click.Context, pool_id: str | None) -> None:
    async def _trades(s: Services) -> Any:
        if pool_id:
            return await s.predictions.execute_pool_trades(pool_id)
        return await s.predictions.execute_winner_trades()

    _print_json(_run(ctx, _trades).to_dict())


# ─── WALLET ──────────────────────────────────────────────────────────

@cli.group()
def wallet() -> None:
    """Positions, PnL and tax report from the transaction log."""


@wallet.command("positions")
@click.argument("address")
@click.pass_context
def wallet_positions(ctx: click.Context, address: str) -> None:
    from swapdesk.ledger.positions import get_positions

    async def _positions(s: Services) -> Any:
        return await get_positions(s.tx_log, s.oracle, address)

    rows = _run(ctx, _positions)
    table = Table(title=f"💼 Positions for {address[:10]}…")
    table.add_column("Token")
    table.add_column("Status")
    table.add_column("Amount", justify="right")
    table.add_column("Avg entry", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("Realized", justify="right")
    table.add_column("Unrealized", justify="right")
    for p in rows:
        table.add_row(
            p.token_symbol, p.status, f"{p.remaining_amount:.6g}",
            f"${p.avg_entry_price:.6g}", f"${p.current_price:.6g}",
            f"[{'green' if p.realized_pnl >= 0 else 'red'}]${p.realized_pnl:,.2f}[/]",
            f"[{'green' if p.unrealized_pnl >= 0 else 'red'}]${p.unrealized_pnl:,.2f}[/]",
        )
    console.print(table)


@wallet.command("pnl")
@click.argument("address")
@click.pass_context
def wallet_pnl(ctx: click.Context, address: str) -> None:
    from swapdesk.ledger.positions import wallet_summary

    async def _pnl(s: Services) -> Any:
        return await wallet_summary(s.tx_log, s.oracle, address)

    _print_json(_run(ctx, _pnl).to_dict())


@wallet.command("record-swap")
@click.option("--wallet", "wallet_address", required=True)
@click.option("--side", type=click.Choice(["BUY", "SELL"], case_sensitive=False), required=True)
@click.option("--token", "token_address", required=True, help="Non-native token of the swap")
@click.option("--tx-hash", required=True)
@click.option("--token-amount", type=float, required=True)
@click.option("--native-amount", type=float, required=True, help="ETH/WETH paid or received")
@click.option("--price-usd", type=float, required=True, help="USD price per token")
@click.option("--gas-used", type=int, default=0)
@click.option("--gas-price-wei", type=int, default=0)
@click.option("--symbol", "token_symbol", default="")
@click.pass_context
def wallet_record_swap(ctx: click.Context, **kwargs: Any) -> None:
    """Record a swap the wallet submitted outside the order engine."""
    async def _record(s: Services) -> Any:
        return s.tx_log.record_swap(**kwargs)

    tx = _run(ctx, _record)
    console.print(f"[green]✅ Recorded {tx.tx_hash} ({kwargs['side'].upper()})[/green]")
    _print_json(tx.model_dump(mode="json"))


@wallet.command("tax-report")
@click.argument("address")
@click.option("--year", type=int, default=None, help="Calendar year (UTC), default current")
@click.pass_context
def wallet_tax_report(ctx: click.Context, address: str, year: int | None) -> None:
    from swapdesk.ledger.tax_report import generate_tax_report

    year = year or datetime.now(timezone.utc).year

    async def _report(s: Services) -> Any:
        return generate_tax_report(s.tx_log, address, year)

    report = _run(ctx, _report)
    console.print(f"\n[bold]🧾 Tax report {year}[/bold] for {address}")
    console.print(f"  Realized gains:  [green]${report.total_realized_gains:,.2f}[/green]")
    console.print(f"  Realized losses: [red]${report.total_realized_losses:,.2f}[/red]")
    console.print(f"  Net:             ${report.net_realized_gain:,.2f}")
    console.print(f"  Gas:             ${report.total_gas_costs:,.2f}")
    table = Table()
    for col in ("Date", "Type", "Token", "Amount", "Cost basis", "Proceeds", "Gain"):
        table.add_column(col)
    for t in report.transactions:
        table.add_row(
            t.date, t.type, t.token_symbol, f"{t.amount:.6g}",
            f"${t.cost_basis:,.2f}", f"${t.sale_price:,.2f}", f"${t.realized_gain:,.2f}",
        )
    console.print(table)


# ─── SCHEDULER ───────────────────────────────────────────────────────

@cli.group()
def scheduler() -> None:
    """Batch passes: monitor, execute, resolve, winner_trades."""


@scheduler.command("run-once")
@click.option("--pass", "pass_names", multiple=True,
              type=click.Choice(["monitor", "execute", "resolve", "winner_trades"]))
@click.pass_context
def scheduler_run_once(ctx: click.Context, pass_names: tuple[str, ...]) -> None:
    from swapdesk.engine.scheduler import PASS_ORDER, SettlementScheduler

    async def _once(s: Services) -> Any:
        sched = SettlementScheduler(s)
        return await sched.run_once(pass_names or PASS_ORDER)

    results = _run(ctx, _once)
    _print_json([r.to_dict() for r in results])


@scheduler.command("start")
@click.pass_context
def scheduler_start(ctx: click.Context) -> None:
    """Run every pass on its configured interval until interrupted."""
    from swapdesk.engine.scheduler import PASS_ORDER, SettlementScheduler

    cfg: AppConfig = ctx.obj["config"]
    console.print("[bold cyan]⏱  Starting settlement scheduler[/bold cyan]")
    console.print(f"  Live execution: {is_live_execution_enabled()}")

    async def _start(s: Services) -> None:
        sched = SettlementScheduler(s, cfg.scheduler)
        for name in PASS_ORDER:
            console.print(f"  {name}: every {sched.interval_for(name)}s")
        try:
            await sched.start()
        except (KeyboardInterrupt, asyncio.CancelledError):
            sched.stop()
            console.print("\n[yellow]Scheduler stopped by user.[/yellow]")

    _run(ctx, _start)


# ─── API ───────────────────────────────────────────────────────────

@cli.command()
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", default=None, type=int, help="Port to listen on")
@click.option("--debug", is_flag=True)
@click.pass_context
def api(ctx: click.Context, host: str | None, port: int | None, debug: bool) -> None:
    """Launch the HTTP API."""
    from swapdesk.api.app import create_app

    cfg: AppConfig = ctx.obj["config"]
    app = create_app(cfg)
    app.run(host=host or cfg.api.host, port=port or cfg.api.port, debug=debug)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
