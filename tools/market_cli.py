#!/usr/bin/env python3
"""
FANTASY EXCHANGE: Runic Index CLI

Usage:
    python -m tools.market_cli show
    python -m tools.market_cli show --hour 2026-02-02T18 --json
    python -m tools.market_cli seed
    python -m tools.market_cli trade p-123 "Buy 10 FIRE"
"""

import argparse
import json
import sys

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from tools.hour_key import HOUR_KEY_RE, utc_hour_key


def _market_table(market) -> Table:
    table = Table(title=f"Runic Index {market.hour_key} UTC ({market.source})")
    table.add_column("Ticker", style="cyan")
    table.add_column("Company")
    table.add_column("Price", justify="right")
    table.add_column("Change", justify="right")
    for c in market.companies:
        style = "green" if c.change > 0 else "red" if c.change < 0 else "dim"
        table.add_row(
            c.id,
            escape(c.name),
            f"{c.price:,.2f}",
            f"[{style}]{c.change:+.2f} ({c.change_pct:+.2f}%)[/{style}]",
        )
    return table


def _print_market(console: Console, market, as_json: bool) -> None:
    if as_json:
        print(json.dumps(market.to_wire(), indent=2, ensure_ascii=False))
        return
    console.print(_market_table(market))
    for n in market.news:
        if n.kind == "BIG":
            console.print(f"[bold yellow]📰 {escape(n.title)}[/bold yellow]\n   {escape(n.body)}")
    for d in market.delisted:
        console.print(f"[red]DELISTED {d.id} @ {d.delist_price:.2f}[/red]: {escape(d.reason)}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Runic Index market tools")
    sub = parser.add_subparsers(dest="command", required=True)

    p_show = sub.add_parser("show", help="Show (and generate if needed) an hour's market")
    p_show.add_argument("--hour", type=str, help="Hour key YYYY-MM-DDTHH (default: now, UTC)")
    p_show.add_argument("--json", action="store_true", help="Print raw JSON")

    p_seed = sub.add_parser("seed", help="Print the opening seed market")
    p_seed.add_argument("--hour", type=str)
    p_seed.add_argument("--json", action="store_true")

    p_trade = sub.add_parser("trade", help="Execute a trade at the current hour's prices")
    p_trade.add_argument("player_id")
    p_trade.add_argument("trade_command", help='e.g. "Buy 10 FIRE"')

    args = parser.parse_args(argv)
    console = Console()

    hour_key = getattr(args, "hour", None) or utc_hour_key()
    if not HOUR_KEY_RE.match(hour_key):
        console.print(f"[red]❌ Bad hour key: {escape(hour_key)}[/red]")
        return 2

    # Imported here so `--help` works without any backend configured
    from tools.market_engine import MarketBusyError, MarketGenerationError, get_or_create_market_hour
    from tools.market_seed import make_seed_market_hour

    if args.command == "seed":
        _print_market(console, make_seed_market_hour(hour_key), args.json)
        return 0

    try:
        market = get_or_create_market_hour(hour_key)
    except (MarketGenerationError, MarketBusyError) as e:
        console.print(f"[red]❌ {escape(str(e))}[/red]")
        raw = getattr(e, "raw", "")
        if raw:
            console.print(escape(raw[:2000]))
        return 1

    if args.command == "show":
        _print_market(console, market, args.json)
        return 0

    from tools.accounts import TradeError, execute_trade, get_or_create_account, settle_delistings

    account = get_or_create_account(args.player_id)
    settle_delistings(account, market)
    try:
        receipt = execute_trade(account, market, args.trade_command, hour_key)
    except TradeError as e:
        console.print(f"[red]❌ {escape(str(e))}[/red]")
        return 1
    snap = receipt.account
    console.print(f"✅ {receipt.side} {receipt.qty} {receipt.company_id} @ {receipt.price:.2f} "
                  f"(cash {receipt.cash_delta:+.2f})")
    console.print(f"   Cash {snap.cash:,.2f}  Net worth {snap.net_worth:,.2f}"
                  f"{'  [bold red]BANKRUPT[/bold red]' if snap.bankrupt else ''}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
