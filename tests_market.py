#!/usr/bin/env python3
"""
FANTASY EXCHANGE: Runic Index market engine tests

Run: python tests_market.py

The LLM is always mocked at tools.market_engine.chat_completion.
"""

import json
import os
import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.keys import market_hour_key, market_hour_lock_key
from config.settings import LLMConfig, MarketConfig
from config.storage import (
    kv_delete, kv_get_raw, kv_set_json, kv_try_acquire_lock, reset_clients, reset_memory_store,
)
from tools.llm_client import ChatResult, LLMError, chat_completion, extract_json
from tools.market_engine import (
    MarketBusyError, MarketGenerationError, attach_images, delisting_history, find_previous_state,
    generate_market_hour, get_or_create_market_hour, parse_delta_response, parse_full_response,
)
from tools.market_models import Company, DelistedCompany, MarketHourState
from tools.market_seed import SEED_COMPANIES, make_seed_market_hour

HOUR = "2026-02-02T18"
PREV_HOUR = "2026-02-02T17"
BIG_NEWS = [{"id": "b1", "title": "Red Dragon Torches Caravan Road", "body": "Smoke over the pass.",
             "impact": "Caravans down, fire wards up."}]


def _llm(text: str) -> ChatResult:
    return ChatResult(text=text, model="test-model")


def _delta(prev: MarketHourState, bump: float = 1.05, skip: str = None, extra_updates=None,
           delist=None, big_news=BIG_NEWS) -> str:
    updates = [
        {"id": c.id, "price": round(c.price * bump, 2),
         "companyNewsTitle": f"{c.name} trades {'up' if bump >= 1 else 'down'}"}
        for c in prev.companies if c.id != skip
    ]
    updates += extra_updates or []
    return json.dumps({"bigNews": big_news, "updates": updates, "delist": delist or []})


def _full(companies, delist=None, big_news=BIG_NEWS) -> str:
    return json.dumps({
        "bigNews": big_news,
        "companies": [
            {"id": t, "name": n, "concept": f"{n} concept", "price": p,
             "companyNewsTitle": f"{n} news", "logoPrompt": f"{n} emblem"}
            for t, n, p in companies
        ],
        "delist": delist or [],
    })


class MarketTestCase(unittest.TestCase):

    def setUp(self):
        patcher = patch.dict(os.environ, {"KV_REST_API_URL": "", "KV_REST_API_TOKEN": "", "REDIS_URL": ""})
        patcher.start()
        self.addCleanup(patcher.stop)
        for attr, value in (("GENERATION_MODE", "delta"), ("IMAGES_ENABLED", False),
                            ("PREV_LOOKBACK_HOURS", 24)):
            p = patch.object(MarketConfig, attr, value)
            p.start()
            self.addCleanup(p.stop)
        reset_memory_store()
        reset_clients()
        self.addCleanup(reset_memory_store)
        self.prev = make_seed_market_hour(PREV_HOUR)

    def assertValidMarket(self, state: MarketHourState, prev: MarketHourState = None):
        tickers = [c.id for c in state.companies]
        self.assertEqual(len(tickers), MarketConfig.COMPANY_COUNT)
        self.assertEqual(len(set(tickers)), len(tickers))
        for c in state.companies:
            self.assertRegex(c.id, r"^[A-Z]{3,6}$")
            self.assertGreater(c.price, 0)
            if prev is None or prev.company(c.id) is None:
                self.assertGreaterEqual(c.price, MarketConfig.LISTING_START_PRICE_MIN)
                self.assertLessEqual(c.price, MarketConfig.LISTING_START_PRICE_MAX)
        self.assertTrue(any(n.kind == "BIG" for n in state.news))
        self.assertLessEqual(len(state.delisted), MarketConfig.MAX_DELISTINGS_PER_HOUR)


# ============================================================
# Seed
# ============================================================

class TestSeedMarket(MarketTestCase):

    def test_seed_is_a_valid_first_hour(self):
        seed = make_seed_market_hour(HOUR)
        self.assertValidMarket(seed)
        self.assertEqual(seed.source, "seed")
        self.assertEqual(seed.hour_key, HOUR)
        self.assertEqual(len([n for n in seed.news if n.kind == "BIG"]), 3)
        self.assertTrue(all(n.hour_key == HOUR for n in seed.news))

    def test_seed_prices_match_listing(self):
        seed = make_seed_market_hour(HOUR)
        self.assertEqual(seed.company("fire").price, 14.6)
        self.assertEqual(seed.company("FIRE").prev_price, 14.6)
        self.assertEqual(seed.tickers(), [t for t, _, _ in SEED_COMPANIES])

    def test_wire_format_is_camel_case(self):
        wire = make_seed_market_hour(HOUR).to_wire()
        self.assertIn("hourKey", wire)
        self.assertIn("generatedAt", wire)
        self.assertIn("prevPrice", wire["companies"][0])
        self.assertIn("changePct", wire["companies"][0])
        self.assertNotIn("logoUrl", wire["companies"][0])


# ============================================================
# JSON extraction
# ============================================================

class TestExtractJson(unittest.TestCase):

    def test_fenced_block(self):
        self.assertEqual(extract_json('Here:\n```json\n{"a": 1}\n```\nbye'), '{"a": 1}')

    def test_leading_chatter_and_braces_in_strings(self):
        raw = 'Sure! {"title": "a } tricky { one", "n": {"x": 1}} trailing'
        self.assertEqual(json.loads(extract_json(raw)), {"title": "a } tricky { one", "n": {"x": 1}})

    def test_nothing_parseable(self):
        self.assertIsNone(extract_json(""))
        self.assertIsNone(extract_json("no json here"))


# ============================================================
# Delta updates
# ============================================================

class TestDeltaGeneration(MarketTestCase):

    def test_valid_delta_updates_every_ticker(self):
        state = parse_delta_response(_delta(self.prev), HOUR, self.prev)
        self.assertValidMarket(state, self.prev)
        self.assertEqual(state.source, "delta")
        fire = state.company("FIRE")
        self.assertEqual(fire.price, 15.33)
        self.assertEqual(fire.prev_price, 14.6)
        self.assertEqual(fire.change, 0.73)
        self.assertEqual(fire.change_pct, 5.0)
        self.assertEqual(fire.name, "Fireball")
        company_news = [n for n in state.news if n.kind == "COMPANY"]
        self.assertEqual(len(company_news), 25)
        self.assertEqual(company_news[0].company_ids, [company_news[0].id.split("-")[1]])

    def test_missing_update_rejects_whole_batch(self):
        raw = _delta(self.prev, skip="ORC")
        with self.assertRaises(MarketGenerationError) as ctx:
            parse_delta_response(raw, HOUR, self.prev)
        self.assertIn("ORC", str(ctx.exception))
        self.assertEqual(ctx.exception.raw, raw)

    def test_duplicate_update_rejected(self):
        raw = _delta(self.prev, extra_updates=[{"id": "FIRE", "price": 20}])
        with self.assertRaisesRegex(MarketGenerationError, "duplicate"):
            parse_delta_response(raw, HOUR, self.prev)

    def test_unknown_ticker_rejected(self):
        raw = _delta(self.prev, extra_updates=[{"id": "NOPE", "price": 3}])
        with self.assertRaisesRegex(MarketGenerationError, "unknown ticker NOPE"):
            parse_delta_response(raw, HOUR, self.prev)

    def test_non_positive_price_rejected(self):
        obj = json.loads(_delta(self.prev))
        obj["updates"][3]["price"] = 0
        with self.assertRaisesRegex(MarketGenerationError, "invalid price"):
            parse_delta_response(json.dumps(obj), HOUR, self.prev)
        obj["updates"][3]["price"] = "NaN"
        with self.assertRaisesRegex(MarketGenerationError, "invalid price"):
            parse_delta_response(json.dumps(obj), HOUR, self.prev)

    def test_lowercase_tickers_and_numeric_strings_accepted(self):
        obj = json.loads(_delta(self.prev))
        obj["updates"][0]["id"] = "fire"
        obj["updates"][0]["price"] = "15.00"
        state = parse_delta_response(json.dumps(obj), HOUR, self.prev)
        self.assertEqual(state.company("FIRE").price, 15.0)

    def test_existing_price_clamped(self):
        obj = json.loads(_delta(self.prev))
        obj["updates"][0]["price"] = 5_000_000
        state = parse_delta_response(json.dumps(obj), HOUR, self.prev)
        self.assertEqual(state.company("FIRE").price, MarketConfig.MAX_PRICE)

    def test_valid_delist_with_replacement(self):
        delist = [{"id": "ORC", "reason": "Mercenary guild dissolved.",
                   "replacement": {"id": "WYRM", "name": "Wyrm Bonds", "concept": "Dragon debt",
                                   "price": 5.5, "companyNewsTitle": "Wyrm Bonds debut"}}]
        state = parse_delta_response(_delta(self.prev, delist=delist), HOUR, self.prev)
        self.assertValidMarket(state, self.prev)
        self.assertIsNone(state.company("ORC"))
        wyrm = state.company("WYRM")
        self.assertEqual((wyrm.price, wyrm.prev_price, wyrm.change), (5.5, 5.5, 0.0))
        # Replacement takes the delisted company's slot
        self.assertEqual(state.tickers()[1], "WYRM")
        self.assertEqual(len(state.delisted), 1)
        d = state.delisted[0]
        self.assertEqual((d.id, d.delist_price, d.delisted_at_hour_key), ("ORC", 9.35, HOUR))
        self.assertEqual(d.reason, "Mercenary guild dissolved.")
        self.assertTrue(any(n.company_ids == ["WYRM"] for n in state.news))
        self.assertFalse(any(n.company_ids == ["ORC"] for n in state.news))

    def test_out_of_band_replacement_dropped(self):
        delist = [{"id": "ORC", "reason": "x", "replacement": {"id": "WYRM", "name": "Wyrm Bonds", "price": 40}}]
        state = parse_delta_response(_delta(self.prev, delist=delist), HOUR, self.prev)
        self.assertValidMarket(state, self.prev)
        self.assertIsNotNone(state.company("ORC"))
        self.assertIsNone(state.company("WYRM"))
        self.assertEqual(state.delisted, [])

    def test_replacement_reusing_listed_ticker_dropped(self):
        delist = [{"id": "ORC", "replacement": {"id": "FIRE", "name": "Fire Again", "price": 3}}]
        state = parse_delta_response(_delta(self.prev, delist=delist), HOUR, self.prev)
        self.assertIsNotNone(state.company("ORC"))
        self.assertEqual(state.delisted, [])

    def test_replacement_reusing_just_delisted_ticker_dropped(self):
        self.prev.delisted = [DelistedCompany(id="WYRM", delisted_at_hour_key=PREV_HOUR, delist_price=3.0)]
        delist = [{"id": "ORC", "replacement": {"id": "WYRM", "name": "Wyrm Bonds", "price": 5.5}}]
        state = parse_delta_response(_delta(self.prev, delist=delist), HOUR, self.prev)
        self.assertIsNone(state.company("WYRM"))
        self.assertIsNotNone(state.company("ORC"))
        self.assertEqual(state.delisted, [])

    def test_delist_without_replacement_or_unknown_dropped(self):
        delist = [{"id": "ORC", "reason": "gone"}, {"id": "ZZZZ", "replacement": {"id": "WYRM", "name": "W", "price": 3}}]
        state = parse_delta_response(_delta(self.prev, delist=delist), HOUR, self.prev)
        self.assertValidMarket(state, self.prev)
        self.assertEqual(state.delisted, [])

    def test_delist_cap(self):
        delist = [
            {"id": "ORC", "replacement": {"id": "WYRM", "name": "Wyrm Bonds", "price": 5.5}},
            {"id": "BARD", "replacement": {"id": "LICH", "name": "Lich Futures", "price": 7.5}},
        ]
        state = parse_delta_response(_delta(self.prev, delist=delist), HOUR, self.prev)
        self.assertEqual([d.id for d in state.delisted], ["ORC"])
        self.assertIsNotNone(state.company("BARD"))
        self.assertIsNone(state.company("LICH"))

    def test_missing_big_news_rejected(self):
        with self.assertRaisesRegex(MarketGenerationError, "bigNews"):
            parse_delta_response(_delta(self.prev, big_news=[]), HOUR, self.prev)

    def test_big_news_capped(self):
        many = [dict(BIG_NEWS[0], id=f"b{i}") for i in range(10)]
        state = parse_delta_response(_delta(self.prev, big_news=many), HOUR, self.prev)
        self.assertEqual(len([n for n in state.news if n.kind == "BIG"]), MarketConfig.MAX_BIG_NEWS)

    def test_flat_prices_rejected(self):
        obj = json.loads(_delta(self.prev))
        for u in obj["updates"]:
            u["price"] = 1.0
        with self.assertRaisesRegex(MarketGenerationError, "variation"):
            parse_delta_response(json.dumps(obj), HOUR, self.prev)

    def test_unparseable_output(self):
        with self.assertRaises(MarketGenerationError) as ctx:
            parse_delta_response("the market is closed today", HOUR, self.prev)
        self.assertEqual(ctx.exception.raw, "the market is closed today")


# ============================================================
# Full regeneration
# ============================================================

class TestFullGeneration(MarketTestCase):

    def _prev_rows(self, bump=1.02, skip=()):
        return [(c.id, c.name, round(c.price * bump, 2)) for c in self.prev.companies if c.id not in skip]

    def test_first_hour_full_listing(self):
        state = parse_full_response(_full(SEED_COMPANIES), HOUR, None)
        self.assertValidMarket(state)
        self.assertEqual(state.source, "full")
        self.assertEqual(state.company("FIRE").change, 0.0)
        self.assertEqual(state.company("FIRE").logo_prompt, "Fireball emblem")

    def test_first_hour_out_of_band_is_structural_failure(self):
        rows = list(SEED_COMPANIES)
        rows[0] = ("FIRE", "Fireball", 30.0)
        with self.assertRaisesRegex(MarketGenerationError, "24 valid unique companies"):
            parse_full_response(_full(rows), HOUR, None)

    def test_missing_ticker_paired_with_new_listing(self):
        rows = self._prev_rows(skip=("ORC",)) + [("WYRM", "Wyrm Bonds", 5.5)]
        raw = _full(rows, delist=[{"id": "ORC", "reason": "Guild dissolved."}])
        state = parse_full_response(raw, HOUR, self.prev)
        self.assertValidMarket(state, self.prev)
        self.assertEqual(state.tickers()[1], "WYRM")
        self.assertEqual(state.delisted[0].id, "ORC")
        self.assertEqual(state.delisted[0].reason, "Guild dissolved.")
        self.assertEqual(state.delisted[0].delist_price, 9.35)

    def test_invalid_replacement_dropped_company_carried(self):
        rows = self._prev_rows(skip=("ORC",)) + [("WYRM", "Wyrm Bonds", 30.0)]
        raw = _full(rows, delist=[{"id": "ORC", "reason": "Guild dissolved."}])
        state = parse_full_response(raw, HOUR, self.prev)
        self.assertValidMarket(state, self.prev)
        orc = state.company("ORC")
        self.assertEqual((orc.price, orc.change), (9.35, 0.0))
        self.assertIsNone(state.company("WYRM"))
        self.assertEqual(state.delisted, [])

    def test_new_listing_reusing_just_delisted_ticker_dropped(self):
        self.prev.delisted = [DelistedCompany(id="WYRM", delisted_at_hour_key=PREV_HOUR, delist_price=3.0)]
        rows = self._prev_rows(skip=("ORC",)) + [("WYRM", "Wyrm Bonds", 5.5)]
        state = parse_full_response(_full(rows), HOUR, self.prev)
        self.assertValidMarket(state, self.prev)
        self.assertIsNone(state.company("WYRM"))
        self.assertEqual(state.company("ORC").price, 9.35)
        self.assertEqual(state.delisted, [])

    def test_extra_missing_and_new_beyond_cap(self):
        rows = self._prev_rows(skip=("ORC", "BARD")) + [("WYRM", "Wyrm Bonds", 5.5), ("LICH", "Lich Futures", 7.5)]
        state = parse_full_response(_full(rows), HOUR, self.prev)
        self.assertValidMarket(state, self.prev)
        self.assertEqual(len(state.delisted), 1)
        self.assertIsNotNone(state.company("WYRM"))
        self.assertIsNone(state.company("LICH"))
        self.assertIsNone(state.company("ORC"))
        self.assertEqual(state.company("BARD").price, 6.3)

    def test_delist_of_still_listed_ticker_ignored(self):
        raw = _full(self._prev_rows(), delist=[{"id": "FIRE", "reason": "no"}])
        state = parse_full_response(raw, HOUR, self.prev)
        self.assertEqual(state.delisted, [])
        self.assertIsNotNone(state.company("FIRE"))

    def test_existing_ticker_bad_price_rejected(self):
        rows = self._prev_rows()
        rows[2] = (rows[2][0], rows[2][1], -4)
        with self.assertRaisesRegex(MarketGenerationError, "invalid price"):
            parse_full_response(_full(rows), HOUR, self.prev)


# ============================================================
# Generation dispatch
# ============================================================

class TestGenerateMarketHour(MarketTestCase):

    def test_no_prev_delta_seeds_without_llm(self):
        with patch("tools.market_engine.chat_completion") as chat:
            state = generate_market_hour(HOUR, None, mode="delta")
        chat.assert_not_called()
        self.assertEqual(state.source, "seed")

    def test_no_prev_full_calls_llm(self):
        with patch("tools.market_engine.chat_completion", return_value=_llm(_full(SEED_COMPANIES))) as chat:
            state = generate_market_hour(HOUR, None, mode="full")
        chat.assert_called_once()
        self.assertEqual(chat.call_args.args[1], "market")
        self.assertEqual(state.source, "full")

    def test_prev_with_delta_mode(self):
        with patch("tools.market_engine.chat_completion", return_value=_llm(_delta(self.prev))) as chat:
            state = generate_market_hour(HOUR, self.prev, mode="delta")
        self.assertIn("updates", chat.call_args.args[0])
        self.assertEqual(state.source, "delta")

    def test_empty_content_carries_hint(self):
        empty = ChatResult(text="", model="m", hint='{"role": "assistant", "refusal": "no"}')
        with patch("tools.market_engine.chat_completion", return_value=empty):
            with self.assertRaises(MarketGenerationError) as ctx:
                generate_market_hour(HOUR, self.prev, mode="delta")
        self.assertIn("empty content", str(ctx.exception))
        self.assertIn("refusal", str(ctx.exception))
        self.assertEqual(ctx.exception.raw, "")

    def test_llm_error_wrapped(self):
        with patch("tools.market_engine.chat_completion", side_effect=LLMError("OPENAI_API_KEY is not set")):
            with self.assertRaisesRegex(MarketGenerationError, "OPENAI_API_KEY"):
                generate_market_hour(HOUR, self.prev, mode="full")

    def test_fenced_response_accepted(self):
        text = "Here you go:\n```json\n" + _delta(self.prev) + "\n```"
        with patch("tools.market_engine.chat_completion", return_value=_llm(text)):
            state = generate_market_hour(HOUR, self.prev, mode="delta")
        self.assertValidMarket(state, self.prev)


# ============================================================
# Hour cache, lookback and lock
# ============================================================

class TestGetOrCreateMarketHour(MarketTestCase):

    def test_first_ever_hour_is_seeded_and_cached(self):
        with patch("tools.market_engine.chat_completion") as chat:
            first = get_or_create_market_hour(HOUR)
            raw_after_first = kv_get_raw(market_hour_key(HOUR))
            second = get_or_create_market_hour(HOUR)
        chat.assert_not_called()
        self.assertEqual(first.source, "seed")
        self.assertEqual(json.dumps(first.to_wire()), json.dumps(second.to_wire()))
        self.assertEqual(kv_get_raw(market_hour_key(HOUR)), raw_after_first)

    def test_llm_called_once_per_hour(self):
        kv_set_json(market_hour_key(PREV_HOUR), self.prev.to_wire())
        with patch("tools.market_engine.chat_completion", return_value=_llm(_delta(self.prev))) as chat:
            first = get_or_create_market_hour(HOUR)
            second = get_or_create_market_hour(HOUR)
        self.assertEqual(chat.call_count, 1)
        self.assertEqual(first.source, "delta")
        self.assertEqual(first.to_wire(), second.to_wire())
        self.assertEqual(json.loads(kv_get_raw(market_hour_key(HOUR))), first.to_wire())

    def test_previous_state_found_within_lookback(self):
        older = make_seed_market_hour("2026-02-02T14")
        kv_set_json(market_hour_key("2026-02-02T14"), older.to_wire())
        self.assertEqual(find_previous_state(HOUR).hour_key, "2026-02-02T14")
        self.assertIsNone(find_previous_state(HOUR, lookback_hours=3))

    def test_mismatched_cached_hour_ignored(self):
        kv_set_json(market_hour_key(HOUR), make_seed_market_hour("1999-01-01T00").to_wire())
        state = get_or_create_market_hour(HOUR)
        self.assertEqual(state.hour_key, HOUR)

    def test_lock_loser_returns_published_state(self):
        kv_try_acquire_lock(market_hour_lock_key(HOUR), 55)
        published = make_seed_market_hour(HOUR)

        def publish(seconds):
            kv_set_json(market_hour_key(HOUR), published.to_wire())

        with patch("config.storage.time.sleep", side_effect=publish) as sleep, \
                patch("tools.market_engine.chat_completion") as chat:
            state = get_or_create_market_hour(HOUR)
        chat.assert_not_called()
        sleep.assert_called_once_with(MarketConfig.LOCK_POLL_INITIAL)
        self.assertEqual(state.to_wire(), published.to_wire())

    def test_lock_loser_times_out_busy(self):
        kv_try_acquire_lock(market_hour_lock_key(HOUR), 55)
        with patch("config.storage.time.sleep") as sleep, \
                patch("tools.market_engine.chat_completion") as chat:
            with self.assertRaises(MarketBusyError):
                get_or_create_market_hour(HOUR)
        chat.assert_not_called()
        self.assertAlmostEqual(sum(c.args[0] for c in sleep.call_args_list), MarketConfig.LOCK_WAIT_SECONDS)

    def test_failed_generation_releases_lock_and_stores_nothing(self):
        kv_set_json(market_hour_key(PREV_HOUR), self.prev.to_wire())
        with patch("tools.market_engine.chat_completion", return_value=_llm("nope")):
            with self.assertRaises(MarketGenerationError):
                get_or_create_market_hour(HOUR)
        self.assertIsNone(kv_get_raw(market_hour_key(HOUR)))
        self.assertIsNone(kv_get_raw(market_hour_lock_key(HOUR)))

    def test_full_mode_reconciles_with_previous_hour(self):
        kv_set_json(market_hour_key(PREV_HOUR), self.prev.to_wire())
        rows = [(c.id, c.name, round(c.price * 0.97, 2)) for c in self.prev.companies]
        with patch.object(MarketConfig, "GENERATION_MODE", "full"), \
                patch("tools.market_engine.chat_completion", return_value=_llm(_full(rows))):
            state = get_or_create_market_hour(HOUR)
        self.assertEqual(state.source, "full")
        self.assertEqual(state.company("FIRE").prev_price, 14.6)
        self.assertLess(state.company("FIRE").change, 0)

    def test_images_attached_when_enabled(self):
        with patch.object(MarketConfig, "IMAGES_ENABLED", True), \
                patch("tools.market_engine.LLMConfig.has_gemini_key", return_value=True), \
                patch.object(MarketConfig, "GENERATION_MODE", "full"), \
                patch("tools.market_engine.chat_completion", return_value=_llm(_full(SEED_COMPANIES))), \
                patch("tools.market_engine.generate_company_logo", return_value="data:image/png;base64,AAAA") as logo:
            state = get_or_create_market_hour(HOUR)
        self.assertEqual(logo.call_count, 25)
        self.assertEqual(state.company("FIRE").logo_url, "data:image/png;base64,AAAA")

    def test_late_publisher_keeps_the_state_already_served(self):
        kv_set_json(market_hour_key(PREV_HOUR), self.prev.to_wire())
        calls = []
        served = {}

        def slow_llm(prompt, call_key):
            calls.append(call_key)
            if len(calls) == 1:
                # Our lock lapses mid-call; another worker generates and serves the hour
                kv_delete(market_hour_lock_key(HOUR))
                served["state"] = get_or_create_market_hour(HOUR)
                return _llm(_delta(self.prev, bump=1.10))
            return _llm(_delta(self.prev, bump=0.90))

        with patch("tools.market_engine.chat_completion", side_effect=slow_llm):
            late = get_or_create_market_hour(HOUR)
            again = get_or_create_market_hour(HOUR)
        self.assertEqual(len(calls), 2)
        self.assertEqual(served["state"].company("FIRE").price, 13.14)
        self.assertEqual(late.to_wire(), served["state"].to_wire())
        self.assertEqual(again.to_wire(), served["state"].to_wire())
        self.assertEqual(json.loads(kv_get_raw(market_hour_key(HOUR))), served["state"].to_wire())

    def test_delistings_recorded_for_later_settlement(self):
        kv_set_json(market_hour_key(PREV_HOUR), self.prev.to_wire())
        delist = [{"id": "ORC", "reason": "Guild dissolved.",
                   "replacement": {"id": "WYRM", "name": "Wyrm Bonds", "price": 5.5}}]
        with patch("tools.market_engine.chat_completion", return_value=_llm(_delta(self.prev, delist=delist))):
            get_or_create_market_hour(HOUR)
        history = delisting_history("ORC")
        self.assertEqual(len(history), 1)
        self.assertEqual((history[0].delisted_at_hour_key, history[0].delist_price), (HOUR, 9.35))
        self.assertEqual(delisting_history("FIRE"), [])

    def test_logos_only_for_new_listings(self):
        state = make_seed_market_hour(HOUR)
        for c in state.companies:
            c.logo_prompt = f"{c.name} emblem"
        state.companies[1] = Company(id="WYRM", name="Wyrm Bonds", price=5.5, prev_price=5.5,
                                     logo_prompt="coiled wyrm")
        with patch("tools.market_engine.generate_company_logo", return_value="data:image/png;base64,AAAA") as logo, \
                patch("tools.market_engine.generate_news_image", return_value=None):
            attach_images(state, self.prev)
        logo.assert_called_once_with("Wyrm Bonds", "coiled wyrm")
        self.assertIsNone(state.company("FIRE").logo_url)
        self.assertEqual(state.company("WYRM").logo_url, "data:image/png;base64,AAAA")


class TestMarketCallBudget(unittest.TestCase):

    def test_market_call_finishes_inside_the_lock(self):
        cfg = LLMConfig.get_config("market")
        self.assertEqual(cfg["max_retries"], 0)
        self.assertLess(cfg["timeout"], MarketConfig.LOCK_TTL_SECONDS)

        client = MagicMock()
        resp = MagicMock()
        resp.choices[0].message.content = '{"ok": true}'
        resp.usage = None
        client.with_options.return_value.chat.completions.create.return_value = resp
        with patch("tools.llm_client.get_openai_client", return_value=client):
            result = chat_completion("prompt", "market")
        client.with_options.assert_called_once_with(timeout=cfg["timeout"], max_retries=0)
        client.chat.completions.create.assert_not_called()
        self.assertEqual(result.text, '{"ok": true}')


if __name__ == "__main__":
    import logging
    logging.disable(logging.WARNING)

    unittest.main(verbosity=2)
