#!/usr/bin/env python3
"""
FANTASY EXCHANGE: Accounts, trading and leaderboard tests

Run: python tests_trading.py
"""

import io
import json
import os
import sys
import unittest
from pathlib import Path
from unittest.mock import patch

PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.keys import player_account_key
from config.settings import AccountConfig, MarketConfig
from config.storage import kv_get_json, kv_set_json, reset_clients, reset_memory_store
from tools.accounts import (
    TradeError, compute_account_snapshot, execute_trade, get_or_create_account,
    parse_trade_command, record_net_worth, reset_account, settle_delistings, top_players,
)
from tools.hour_key import parse_hour_key
from tools.market_cli import main as market_cli
from tools.market_engine import record_delistings
from tools.market_models import DelistedCompany, PlayerAccount
from tools.market_seed import make_seed_market_hour

HOUR = "2026-02-02T18"
PREV_HOUR = "2026-02-02T17"
NEXT_HOUR = "2026-02-02T19"


class TradingTestCase(unittest.TestCase):

    def setUp(self):
        patcher = patch.dict(os.environ, {"KV_REST_API_URL": "", "KV_REST_API_TOKEN": "", "REDIS_URL": ""})
        patcher.start()
        self.addCleanup(patcher.stop)
        reset_memory_store()
        reset_clients()
        self.addCleanup(reset_memory_store)
        self.market = make_seed_market_hour(HOUR)      # FIRE 14.60, ORC 9.35
        self.account = get_or_create_account("p-test")


# ============================================================
# Command parsing
# ============================================================

class TestParseTradeCommand(unittest.TestCase):

    def test_valid_commands(self):
        cmd = parse_trade_command("Buy 10 FIRE")
        self.assertEqual((cmd.side, cmd.qty, cmd.company_id), ("BUY", 10, "FIRE"))
        cmd = parse_trade_command("  sHoRt 3 orc  ")
        self.assertEqual((cmd.side, cmd.qty, cmd.company_id), ("SHORT", 3, "ORC"))

    def test_quantity_clamped(self):
        self.assertEqual(parse_trade_command("buy 0 FIRE").qty, 1)
        self.assertEqual(parse_trade_command("buy 99999999 FIRE").qty, AccountConfig.MAX_TRADE_QTY)

    def test_invalid_commands(self):
        for bad in ("", "buy FIRE", "buy 10", "hold 10 FIRE", "buy -5 FIRE", "buy 1.5 FIRE",
                    "buy 10 FI", "buy 10 FIREBAL", "buy 10 FIRE now"):
            with self.assertRaises(TradeError, msg=bad):
                parse_trade_command(bad)

    def test_too_long(self):
        with self.assertRaisesRegex(TradeError, "too long"):
            parse_trade_command("buy " + "0" * 60 + "1 FIRE")

    def test_trade_error_is_value_error(self):
        self.assertTrue(issubclass(TradeError, ValueError))


# ============================================================
# Execution
# ============================================================

class TestExecuteTrade(TradingTestCase):

    def test_buy(self):
        receipt = execute_trade(self.account, self.market, "Buy 10 FIRE", HOUR)
        self.assertTrue(receipt.ok)
        self.assertEqual(receipt.price, 14.6)
        self.assertEqual(receipt.cash_delta, -146.0)
        self.assertEqual(receipt.position_delta, 10)
        self.assertEqual(receipt.account.cash, -46.0)
        self.assertEqual(receipt.account.positions, {"FIRE": 10})
        self.assertEqual(receipt.account.net_worth, 100.0)
        self.assertFalse(receipt.account.bankrupt)
        # Persisted
        stored = kv_get_json(player_account_key("p-test"))
        self.assertEqual(stored["positions"], {"FIRE": 10})
        self.assertEqual(stored["cash"], -46.0)

    def test_sell_partial_and_to_zero(self):
        execute_trade(self.account, self.market, "buy 10 FIRE", HOUR)
        receipt = execute_trade(self.account, self.market, "sell 4 FIRE", HOUR)
        self.assertEqual(receipt.cash_delta, 58.4)
        self.assertEqual(self.account.positions["FIRE"], 6)
        execute_trade(self.account, self.market, "sell 6 FIRE", HOUR)
        self.assertNotIn("FIRE", self.account.positions)
        self.assertEqual(self.account.cash, 100.0)

    def test_oversell_rejected_without_changes(self):
        execute_trade(self.account, self.market, "buy 2 FIRE", HOUR)
        cash_before = self.account.cash
        with self.assertRaisesRegex(TradeError, "You have 2"):
            execute_trade(self.account, self.market, "sell 3 FIRE", HOUR)
        self.assertEqual(self.account.cash, cash_before)
        self.assertEqual(self.account.positions, {"FIRE": 2})

    def test_sell_with_no_position_rejected(self):
        with self.assertRaisesRegex(TradeError, "You have 0"):
            execute_trade(self.account, self.market, "sell 1 ORC", HOUR)

    def test_short_credits_cash_and_goes_negative(self):
        receipt = execute_trade(self.account, self.market, "short 3 ORC", HOUR)
        self.assertEqual(receipt.cash_delta, 28.05)
        self.assertEqual(self.account.cash, 128.05)
        self.assertEqual(self.account.positions, {"ORC": -3})
        self.assertEqual(receipt.account.net_worth, 100.0)

    def test_cover_short_removes_position(self):
        execute_trade(self.account, self.market, "short 3 ORC", HOUR)
        execute_trade(self.account, self.market, "buy 3 ORC", HOUR)
        self.assertEqual(self.account.positions, {})
        self.assertEqual(self.account.cash, 100.0)

    def test_unknown_ticker(self):
        with self.assertRaisesRegex(TradeError, "Unknown stock ID: ZZZ"):
            execute_trade(self.account, self.market, "buy 1 ZZZ", HOUR)


# ============================================================
# Valuation and settlement
# ============================================================

class TestAccountValuation(TradingTestCase):

    def test_new_account_defaults(self):
        self.assertEqual(self.account.cash, AccountConfig.STARTING_CASH)
        self.assertEqual(self.account.positions, {})
        again = get_or_create_account("p-test")
        self.assertEqual(again.created_at, self.account.created_at)

    def test_snapshot_ignores_unknown_tickers(self):
        acct = PlayerAccount(player_id="p", cash=10.0, positions={"FIRE": 2, "GONE": 50})
        snap = compute_account_snapshot(acct, self.market)
        self.assertEqual(snap.net_worth, 39.2)
        self.assertFalse(snap.bankrupt)
        self.assertIn("netWorth", snap.to_wire())

    def test_bankrupt_at_zero(self):
        acct = PlayerAccount(player_id="p", cash=-29.2, positions={"FIRE": 2})
        self.assertTrue(compute_account_snapshot(acct, self.market).bankrupt)

    def test_settle_delistings(self):
        self.market.delisted = [DelistedCompany(id="ORC", delisted_at_hour_key=HOUR, delist_price=9.35)]
        acct = PlayerAccount(player_id="p", cash=0.0, positions={"ORC": 10, "FIRE": 1})
        self.assertTrue(settle_delistings(acct, self.market))
        self.assertEqual(acct.cash, 93.5)
        self.assertEqual(acct.positions, {"FIRE": 1})
        self.assertFalse(settle_delistings(acct, self.market))

    def test_settle_short_pays_back(self):
        self.market.delisted = [DelistedCompany(id="ORC", delisted_at_hour_key=HOUR, delist_price=9.35)]
        acct = PlayerAccount(player_id="p", cash=50.0, positions={"ORC": -2})
        settle_delistings(acct, self.market)
        self.assertEqual(acct.cash, 31.3)
        self.assertEqual(acct.positions, {})

    def test_reset(self):
        execute_trade(self.account, self.market, "buy 5 FIRE", HOUR)
        fresh = reset_account("p-test")
        self.assertEqual(fresh.cash, AccountConfig.STARTING_CASH)
        self.assertEqual(get_or_create_account("p-test").positions, {})

    def test_corrupt_record_recreated(self):
        kv_set_json(player_account_key("p-bad"), {"playerId": "p-bad", "cash": "lots"})
        acct = get_or_create_account("p-bad")
        self.assertEqual(acct.cash, AccountConfig.STARTING_CASH)


class TestMissedDelistings(TradingTestCase):
    """Players who were away during the delisting hour still get settled."""

    def setUp(self):
        super().setUp()
        delisting_hour = make_seed_market_hour(HOUR)
        delisting_hour.delisted = [DelistedCompany(id="ORC", delisted_at_hour_key=HOUR, delist_price=9.35)]
        record_delistings(delisting_hour)
        self.next_market = make_seed_market_hour(NEXT_HOUR)
        self.next_market.companies = [c for c in self.next_market.companies if c.id != "ORC"]

    def _last_saved_in(self, hour_key, positions, cash=100.0):
        saved_at = int(parse_hour_key(hour_key).timestamp() * 1000) + 30 * 60 * 1000
        return PlayerAccount(player_id="p-away", cash=cash, positions=positions, updated_at=saved_at)

    def test_returning_an_hour_later_settles_at_delist_price(self):
        acct = self._last_saved_in(PREV_HOUR, {"ORC": 10})
        self.assertTrue(settle_delistings(acct, self.next_market))
        self.assertEqual(acct.cash, 193.5)
        self.assertEqual(acct.positions, {})
        self.assertEqual(compute_account_snapshot(acct, self.next_market).net_worth, 193.5)
        self.assertFalse(settle_delistings(acct, self.next_market))

    def test_missed_short_pays_back(self):
        acct = self._last_saved_in(PREV_HOUR, {"ORC": -2, "FIRE": 1})
        settle_delistings(acct, self.next_market)
        self.assertEqual(acct.cash, 81.3)
        self.assertEqual(acct.positions, {"FIRE": 1})

    def test_position_opened_after_relisting_not_settled(self):
        relisted = make_seed_market_hour("2026-02-02T22")
        acct = self._last_saved_in("2026-02-02T22", {"ORC": 4})
        self.assertFalse(settle_delistings(acct, relisted))
        self.assertEqual(acct.positions, {"ORC": 4})


# ============================================================
# CLI
# ============================================================

class TestMarketCli(TradingTestCase):

    def setUp(self):
        super().setUp()
        p = patch.object(MarketConfig, "GENERATION_MODE", "delta")
        p.start()
        self.addCleanup(p.stop)

    def _run(self, *argv):
        with patch("sys.stdout", new_callable=io.StringIO) as out:
            code = market_cli(list(argv))
        return code, out.getvalue()

    def test_seed_json(self):
        code, out = self._run("seed", "--hour", HOUR, "--json")
        self.assertEqual(code, 0)
        market = json.loads(out)
        self.assertEqual(market["hourKey"], HOUR)
        self.assertEqual(len(market["companies"]), 25)

    def test_bad_hour_key(self):
        code, _ = self._run("show", "--hour", "yesterday")
        self.assertEqual(code, 2)

    def test_trade_executes_and_saves(self):
        code, out = self._run("trade", "p-cli", "Buy 10 FIRE")
        self.assertEqual(code, 0)
        self.assertIn("BUY 10 FIRE", out)
        self.assertEqual(kv_get_json(player_account_key("p-cli"))["positions"], {"FIRE": 10})

    def test_rejected_trade_exit_code(self):
        code, out = self._run("trade", "p-cli", "gamble everything")
        self.assertEqual(code, 1)
        self.assertIn("Invalid command", out)
        self.assertIn("[number] [stock ID]", out)


# ============================================================
# Leaderboard
# ============================================================

class TestLeaderboard(TradingTestCase):

    def test_ranked_and_shortened(self):
        record_net_worth(HOUR, "player-aaaaaaaa-1111", 120.0)
        record_net_worth(HOUR, "short", 80.5)
        record_net_worth(HOUR, "player-bbbbbbbb-2222", 150.257)
        entries = top_players(HOUR)
        self.assertEqual([e["rank"] for e in entries], [1, 2, 3])
        self.assertEqual(entries[0], {"rank": 1, "player": "play..2222", "netWorth": 150.26})
        self.assertEqual(entries[2]["player"], "short")

    def test_latest_value_wins_and_limit(self):
        record_net_worth(HOUR, "p1", 10)
        record_net_worth(HOUR, "p2", 20)
        record_net_worth(HOUR, "p1", 30)
        self.assertEqual(top_players(HOUR, limit=1), [{"rank": 1, "player": "p1", "netWorth": 30.0}])

    def test_empty_hour(self):
        self.assertEqual(top_players("2000-01-01T00"), [])


if __name__ == "__main__":
    import logging
    logging.disable(logging.WARNING)

    unittest.main(verbosity=2)
