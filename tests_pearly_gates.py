#!/usr/bin/env python3
"""
FANTASY EXCHANGE: Pearly Gates tests

Run: python tests_pearly_gates.py

The LLM is mocked at tools.pearly_gates.chat_completion; portraits are patched off.
"""

import json
import os
import sys
import unittest
import uuid
from pathlib import Path
from unittest.mock import patch

PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.keys import profile_key_for
from config.settings import GameConfig
from config.storage import kv_get_json, kv_set_json, reset_clients, reset_memory_store
from tools import pearly_gates as pg
from tools.llm_client import ChatResult

DATE = "2026-02-02"

PROFILE_JSON = json.dumps({
    "name": "Edna Marsh",
    "age": 71,
    "occupation": "Beekeeper",
    "causeOfDeath": "Stung by irony",
    "bio": "Kept bees for fifty years. Sold honey at fair prices, mostly.",
    "bestActs": ["Rebuilt a neighbour's barn", "Fostered six children", "Returned a lost wallet"],
    "worstActs": ["Diluted honey for the mayor", "Lied about a prize ribbon", "Released bees at a wedding"],
})


def _llm(text: str) -> ChatResult:
    return ChatResult(text=text, model="test-model")


def _stored_profile(alignment="EVIL", game_id=DATE, mode="daily", **extra) -> dict:
    record = {
        "version": 1,
        "dateKey": DATE if mode == "daily" else None,
        "gameId": game_id,
        "mode": mode,
        "alignment": alignment,
        "visible": {"caseNumber": pg.case_number_for(game_id), "name": "Edna Marsh", "age": 71,
                    "occupation": "Beekeeper", "causeOfDeath": "Stung by irony"},
        "hidden": {"bio": "Bees.", "bestActs": ["a", "b", "c"], "worstActs": ["x", "y", "z"]},
    }
    record.update(extra)
    kv_set_json(profile_key_for(mode, game_id, DATE), record)
    return record


class GameTestCase(unittest.TestCase):

    def setUp(self):
        patcher = patch.dict(os.environ, {"KV_REST_API_URL": "", "KV_REST_API_TOKEN": "", "REDIS_URL": ""})
        patcher.start()
        self.addCleanup(patcher.stop)
        portrait = patch("tools.pearly_gates.generate_portrait", return_value=None)
        portrait.start()
        self.addCleanup(portrait.stop)
        reset_memory_store()
        reset_clients()
        self.addCleanup(reset_memory_store)


# ============================================================
# Deterministic helpers
# ============================================================

class TestDeterminism(unittest.TestCase):

    def test_case_number_range_and_stability(self):
        for gid in (DATE, "2026-02-03", str(uuid.uuid4()), "x"):
            n = pg.case_number_for(gid)
            self.assertGreaterEqual(n, 1000)
            self.assertLessEqual(n, 9999)
            self.assertEqual(n, pg.case_number_for(gid))

    def test_daily_alignment_is_stable(self):
        self.assertEqual(pg.daily_alignment(DATE), pg.daily_alignment(DATE))
        alignments = {pg.daily_alignment(f"2026-03-{d:02d}") for d in range(1, 29)}
        self.assertEqual(alignments, {"GOOD", "EVIL"})

    def test_mode_normalized(self):
        self.assertEqual(pg.normalize_mode("debug-random"), "debug-random")
        self.assertEqual(pg.normalize_mode("anything"), "daily")
        self.assertEqual(pg.normalize_mode(None), "daily")


class TestObviousQuestionGuard(unittest.TestCase):

    def test_blocks_direct_alignment_questions(self):
        for q in ("Are you good or evil?", "ARE YOU A GOOD PERSON", "heaven or hell?",
                  "Should I send you to heaven?", "Do you deserve hell?", "What's your alignment?",
                  "Were you evil?"):
            self.assertTrue(pg.is_obvious_alignment_question(q), q)

    def test_allows_questions_about_deeds(self):
        for q in ("What did you do with the honey money?", "Who did you hurt most?",
                  "Tell me about the wedding.", "Did you ever steal anything?"):
            self.assertFalse(pg.is_obvious_alignment_question(q), q)

    def test_warning_is_godly(self):
        msg = pg.god_obvious_question_warning()
        self.assertEqual(msg, msg.upper())


# ============================================================
# Start / load
# ============================================================

class TestStartGame(GameTestCase):

    def test_daily_start_creates_once(self):
        with patch("tools.pearly_gates.chat_completion", return_value=_llm(PROFILE_JSON)) as chat:
            first = pg.start_game("daily", DATE)
            second = pg.start_game("daily", DATE)
        self.assertEqual(chat.call_count, 1)
        self.assertEqual(chat.call_args.args[1], "profile")
        self.assertIn(f"TRUE ALIGNMENT: {pg.daily_alignment(DATE)}", chat.call_args.args[0])
        self.assertEqual(first, second)
        self.assertEqual(first["mode"], "daily")
        self.assertEqual(first["gameId"], DATE)
        self.assertEqual(first["visible"]["name"], "Edna Marsh")
        self.assertEqual(first["visible"]["caseNumber"], pg.case_number_for(DATE))
        self.assertNotIn("hidden", first)
        self.assertNotIn("alignment", first)
        stored = kv_get_json(profile_key_for("daily", DATE, DATE))
        self.assertEqual(stored["alignment"], pg.daily_alignment(DATE))

    def test_daily_requires_valid_date(self):
        with self.assertRaises(pg.GameInputError):
            pg.start_game("daily", "")
        with self.assertRaises(pg.GameInputError):
            pg.start_game("daily", "tomorrow")

    def test_random_mode_uses_uuid(self):
        with patch("tools.pearly_gates.chat_completion", return_value=_llm(PROFILE_JSON)) as chat:
            a = pg.start_game("debug-random", DATE)
            b = pg.start_game("debug-random", DATE)
        self.assertEqual(chat.call_count, 2)
        self.assertNotEqual(a["gameId"], b["gameId"])
        self.assertEqual(str(uuid.UUID(a["gameId"])), a["gameId"])
        self.assertIsNotNone(pg.load_profile("debug-random", a["gameId"]))

    def test_bad_profile_output(self):
        with patch("tools.pearly_gates.chat_completion", return_value=_llm('{"name": "X", "age": "old"}')):
            with self.assertRaises(pg.ProfileGenerationError) as ctx:
                pg.start_game("daily", DATE)
        self.assertIn("old", ctx.exception.raw)
        self.assertIsNone(kv_get_json(profile_key_for("daily", DATE, DATE)))

    def test_missing_acts_rejected(self):
        obj = json.loads(PROFILE_JSON)
        obj["bestActs"] = ["only one"]
        with patch("tools.pearly_gates.chat_completion", return_value=_llm(json.dumps(obj))):
            with self.assertRaises(pg.ProfileGenerationError):
                pg.start_game("debug-random", DATE)

    def test_busy_when_another_worker_creates(self):
        from config.storage import kv_try_acquire_lock
        from config.keys import profile_lock_key_for
        kv_try_acquire_lock(profile_lock_key_for("daily", DATE, DATE), 45)
        with patch("config.storage.time.sleep"), \
                patch("tools.pearly_gates.chat_completion") as chat:
            with self.assertRaises(pg.ProfileBusyError):
                pg.start_game("daily", DATE)
        chat.assert_not_called()

    def test_legacy_profile_migrated(self):
        record = _stored_profile(alignment="GOOD", faceEmoji="😇")
        record["visible"].pop("caseNumber")
        kv_set_json(profile_key_for("daily", DATE, DATE), record)

        profile = pg.load_profile("daily", DATE, DATE)
        self.assertEqual(profile.visible.case_number, pg.case_number_for(DATE))
        self.assertEqual(profile.alignment, "GOOD")
        stored = kv_get_json(profile_key_for("daily", DATE, DATE))
        self.assertNotIn("faceEmoji", stored)
        self.assertEqual(stored["visible"]["caseNumber"], pg.case_number_for(DATE))
        self.assertEqual(stored["alignment"], "GOOD")


# ============================================================
# Ask
# ============================================================

class TestAsk(GameTestCase):

    def test_answer_in_character(self):
        _stored_profile()
        with patch("tools.pearly_gates.chat_completion",
                   return_value=_llm('{"answer": "The bees were asking for it."}')) as chat:
            result = pg.ask("daily", DATE, DATE, "What happened at the wedding?",
                            [{"q": "Hello?", "a": "Hi.", "from": "SOUL"}])
        self.assertEqual(result, {"answer": "The bees were asking for it."})
        prompt = chat.call_args.args[0]
        self.assertIn("Q: Hello?", prompt)
        self.assertIn("What happened at the wedding?", prompt)

    def test_obvious_question_blocked_without_llm(self):
        _stored_profile()
        with patch("tools.pearly_gates.chat_completion") as chat:
            result = pg.ask("daily", DATE, DATE, "Are you good or evil?", [])
        chat.assert_not_called()
        self.assertTrue(result["blocked"])
        self.assertEqual(result["godMessage"], pg.god_obvious_question_warning())

    def test_question_validation(self):
        _stored_profile()
        with self.assertRaisesRegex(pg.GameInputError, "Missing question"):
            pg.ask("daily", DATE, DATE, "   ", [])
        with self.assertRaisesRegex(pg.GameInputError, "140"):
            pg.ask("daily", DATE, DATE, "x" * (GameConfig.MAX_QUESTION_CHARS + 1), [])

    def test_question_limit_counts_soul_answers_only(self):
        _stored_profile()
        five = [{"q": f"q{i}", "a": "a"} for i in range(GameConfig.MAX_QUESTIONS)]
        with self.assertRaisesRegex(pg.GameInputError, "No questions left"):
            pg.ask("daily", DATE, DATE, "One more?", five)

        four_plus_god = five[:4] + [{"q": "Are you evil?", "a": "NO.", "from": "GOD"}]
        with patch("tools.pearly_gates.chat_completion", return_value=_llm('{"answer": "Fine."}')):
            self.assertEqual(pg.ask("daily", DATE, DATE, "Last one?", four_plus_god), {"answer": "Fine."})

    def test_unknown_game(self):
        with self.assertRaises(pg.GameNotFoundError):
            pg.ask("debug-random", DATE, str(uuid.uuid4()), "Hello?", [])

    def test_random_mode_needs_game_id(self):
        with self.assertRaisesRegex(pg.GameInputError, "gameId"):
            pg.ask("debug-random", DATE, "", "Hello?", [])

    def test_unreadable_answer(self):
        _stored_profile()
        with patch("tools.pearly_gates.chat_completion", return_value=_llm("mumbles")):
            with self.assertRaises(pg.GameGenerationError) as ctx:
                pg.ask("daily", DATE, DATE, "Hello?", [])
        self.assertEqual(ctx.exception.raw, "mumbles")


# ============================================================
# Judge
# ============================================================

class TestJudge(GameTestCase):

    def test_correct_and_wrong(self):
        _stored_profile(alignment="EVIL")
        reply = _llm('{"godMessage": "CORRECT, MORTAL."}')
        with patch("tools.pearly_gates.chat_completion", return_value=reply) as chat:
            right = pg.judge("daily", DATE, DATE, "hell", [])
            wrong = pg.judge("daily", DATE, DATE, "HEAVEN", [])
        self.assertEqual(right, {"correct": True, "godMessage": "CORRECT, MORTAL."})
        self.assertFalse(wrong["correct"])
        self.assertIn("THE CORRECT STAMP WAS: HELL", chat.call_args.args[0])
        self.assertIn("(THE PLAYER ASKED NO QUESTIONS.)", chat.call_args.args[0])

    def test_good_soul_belongs_in_heaven(self):
        _stored_profile(alignment="GOOD")
        with patch("tools.pearly_gates.chat_completion", return_value=_llm('{"godMessage": "YES."}')):
            self.assertTrue(pg.judge("daily", DATE, DATE, "HEAVEN", [])["correct"])

    def test_invalid_judgment(self):
        _stored_profile()
        with self.assertRaisesRegex(pg.GameInputError, "Missing judgment"):
            pg.judge("daily", DATE, DATE, "PURGATORY", [])

    def test_unknown_game(self):
        with self.assertRaises(pg.GameNotFoundError):
            pg.judge("daily", "2020-01-01", "", "HELL", [])


class TestParseGodResponse(unittest.TestCase):

    def test_strict_json(self):
        self.assertEqual(pg.parse_god_response('{"godMessage": " BEHOLD. "}'), "BEHOLD.")

    def test_regex_fallback(self):
        raw = '{"godMessage": "THOU ERRED.\\nBEHOLD." , broken'
        self.assertEqual(pg.parse_god_response(raw), "THOU ERRED.\nBEHOLD.")

    def test_canned_fallback(self):
        self.assertEqual(pg.parse_god_response("the heavens are silent"), pg.GOD_FALLBACK_MESSAGE)
        self.assertEqual(pg.parse_god_response(""), pg.GOD_FALLBACK_MESSAGE)
        self.assertEqual(pg.parse_god_response('{"godMessage": ""}'), pg.GOD_FALLBACK_MESSAGE)


if __name__ == "__main__":
    import logging
    logging.disable(logging.WARNING)

    unittest.main(verbosity=2)
