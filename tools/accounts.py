"""
FANTASY EXCHANGE: Player Accounts & Trading

Accounts are plain KV records keyed by player id (no auth). Every write refreshes
the 30-day TTL. Trades execute at the current hour's snapped price.

    acct = get_or_create_account("p-123")
    settle_delistings(acct, market)
    receipt = execute_trade(acct, market, "Buy 10 FIRE", hour_key)

Read-modify-write per request; two concurrent trades for one player can race.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from config.keys import leaderboard_key, player_account_key
from config.settings import AccountConfig
from config.storage import kv_get_json, kv_set_json
from tools.hour_key import utc_hour_key
from tools.market_engine import delisting_history
from tools.market_models import (
    AccountSnapshot, DelistedCompany, MarketHourState, PlayerAccount, TradeReceipt, TradeSide,
    now_ms, round2,
)

logger = logging.getLogger("fantasyx.accounts")

TRADE_COMMAND_RE = re.compile(r"^(buy|sell|short)\s+(\d+)\s+([a-z]{3,6})\s*$", re.IGNORECASE)
COMMAND_HELP = "Invalid command. Use: Buy/Sell/Short [number] [stock ID]"


class TradeError(ValueError):
    """Rejected trade; the message is shown to the player."""


# ═══════════════════════════════════════════════
# Persistence
# ═══════════════════════════════════════════════

def _fresh_account(player_id: str) -> PlayerAccount:
    return PlayerAccount(player_id=player_id, cash=AccountConfig.STARTING_CASH, positions={})


def get_or_create_account(player_id: str) -> PlayerAccount:
    key = player_account_key(player_id)
    existing = kv_get_json(key)
    if isinstance(existing, dict) and existing.get("playerId") == player_id:
        try:
            return PlayerAccount.model_validate(existing)
        except ValueError as e:
            logger.warning(f"Corrupt account {player_id}, recreating: {e}")

    created = _fresh_account(player_id)
    kv_set_json(key, created.to_wire(), ex_seconds=AccountConfig.ACCOUNT_TTL_SECONDS)
    logger.info(f"Created account {player_id}")
    return created


def save_account(account: PlayerAccount) -> None:
    account.updated_at = now_ms()
    kv_set_json(player_account_key(account.player_id), account.to_wire(),
                ex_seconds=AccountConfig.ACCOUNT_TTL_SECONDS)


def reset_account(player_id: str) -> PlayerAccount:
    account = _fresh_account(player_id)
    kv_set_json(player_account_key(player_id), account.to_wire(),
                ex_seconds=AccountConfig.ACCOUNT_TTL_SECONDS)
    return account


# ═══════════════════════════════════════════════
# Valuation
# ═══════════════════════════════════════════════

def _missed_delisting(ticker: str, since_hour: str) -> Optional[DelistedCompany]:
    """Earliest delisting of `ticker` in or after the hour the account was last saved."""
    for d in delisting_history(ticker):
        if d.delisted_at_hour_key >= since_hour:
            return d
    return None


def settle_delistings(account: PlayerAccount, market: MarketHourState) -> bool:
    """Close out positions in delisted tickers at their delist price.

    Covers this hour's delistings and any that happened while the player was
    away (a position held across a delisting is always older than it). Shares
    may be negative (shorts pay the price back). Returns True when the account
    changed and should be saved.
    """
    this_hour = {d.id: d for d in market.delisted}
    last_saved_hour = utc_hour_key(datetime.fromtimestamp(account.updated_at / 1000, tz=timezone.utc))
    changed = False
    for ticker, shares in list(account.positions.items()):
        if not shares:
            continue
        d = this_hour.get(ticker) or _missed_delisting(ticker, last_saved_hour)
        if d is None:
            continue
        account.cash = round2(account.cash + shares * d.delist_price)
        del account.positions[ticker]
        changed = True
        logger.info(f"Settled {shares} {ticker} @ {d.delist_price} ({d.delisted_at_hour_key}) "
                    f"for {account.player_id}")
    return changed


def compute_account_snapshot(account: PlayerAccount, market: MarketHourState) -> AccountSnapshot:
    prices = market.price_map()
    # Tickers missing from the market count as 0 until the next settlement
    positions_value = sum(shares * prices[t] for t, shares in account.positions.items() if t in prices)
    net_worth = round2(account.cash + positions_value)
    return AccountSnapshot(**account.model_dump(), net_worth=net_worth, bankrupt=net_worth <= 0)


# ═══════════════════════════════════════════════
# Trading
# ═══════════════════════════════════════════════

@dataclass
class TradeCommand:
    side: TradeSide
    qty: int
    company_id: str


def parse_trade_command(command: str) -> TradeCommand:
    """Parse "Buy 10 FIRE" style input. Raises TradeError."""
    command = (command or "").strip()
    if not command:
        raise TradeError("Missing command")
    if len(command) > AccountConfig.MAX_COMMAND_CHARS:
        raise TradeError(f"Command too long (max {AccountConfig.MAX_COMMAND_CHARS} characters).")
    m = TRADE_COMMAND_RE.match(command)
    if not m:
        raise TradeError(COMMAND_HELP)
    qty = max(1, min(AccountConfig.MAX_TRADE_QTY, int(m.group(2))))
    return TradeCommand(side=m.group(1).upper(), qty=qty, company_id=m.group(3).upper())


def execute_trade(account: PlayerAccount, market: MarketHourState, command: str,
                  hour_key: str) -> TradeReceipt:
    """Apply one trade to `account` in place and save it."""
    parsed = parse_trade_command(command)

    company = market.company(parsed.company_id)
    if company is None:
        raise TradeError(f"Unknown stock ID: {parsed.company_id}")
    price = company.price

    current = account.positions.get(parsed.company_id, 0)
    qty = parsed.qty
    if parsed.side == "BUY":
        cash_delta, pos_delta = -qty * price, qty
    elif parsed.side == "SELL":
        if current < qty:
            raise TradeError(f"Not enough shares to sell. You have {current}.")
        cash_delta, pos_delta = qty * price, -qty
    else:  # SHORT
        cash_delta, pos_delta = qty * price, -qty

    account.cash = round2(account.cash + cash_delta)
    new_position = current + pos_delta
    if new_position == 0:
        account.positions.pop(parsed.company_id, None)
    else:
        account.positions[parsed.company_id] = new_position

    save_account(account)
    logger.info(f"Trade {account.player_id}: {parsed.side} {qty} {parsed.company_id} @ {price}")

    return TradeReceipt(
        hour_key=hour_key,
        side=parsed.side,
        qty=qty,
        company_id=parsed.company_id,
        price=price,
        cash_delta=round2(cash_delta),
        position_delta=pos_delta,
        account=compute_account_snapshot(account, market),
    )


# ═══════════════════════════════════════════════
# Hourly leaderboard
# ═══════════════════════════════════════════════

def _short_id(player_id: str) -> str:
    return player_id if len(player_id) <= 8 else f"{player_id[:4]}..{player_id[-4:]}"


def record_net_worth(hour_key: str, player_id: str, net_worth: float) -> None:
    key = leaderboard_key(hour_key)
    board = kv_get_json(key)
    if not isinstance(board, dict):
        board = {}
    board[player_id] = round2(net_worth)
    kv_set_json(key, board, ex_seconds=AccountConfig.LEADERBOARD_TTL_SECONDS)


def top_players(hour_key: str, limit: int = None) -> list[dict]:
    """Best net worths recorded this hour, highest first."""
    limit = AccountConfig.LEADERBOARD_SIZE if limit is None else max(1, int(limit))
    board = kv_get_json(leaderboard_key(hour_key))
    if not isinstance(board, dict):
        return []
    ranked = sorted(
        ((pid, float(v)) for pid, v in board.items() if isinstance(v, (int, float))),
        key=lambda kv: kv[1],
        reverse=True,
    )
    return [
        {"rank": i + 1, "player": _short_id(pid), "netWorth": round2(worth)}
        for i, (pid, worth) in enumerate(ranked[:limit])
    ]
