#!/usr/bin/env python3
"""
FANTASY EXCHANGE: Storage, key and hour-bucket tests

Run: python tests_storage.py
"""

import json
import os
import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import redis

PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from config import keys
from config import storage
from config.storage import (
    active_backend, kv_delete, kv_get_json, kv_get_raw, kv_set_json, kv_set_json_if_absent,
    kv_try_acquire_lock, kv_wait_for_json, reset_clients, reset_memory_store,
)
from tools.hour_key import is_date_key, parse_hour_key, prev_utc_hour_key, utc_date_key, utc_hour_key

MEMORY_ENV = {"KV_REST_API_URL": "", "KV_REST_API_TOKEN": "", "REDIS_URL": ""}


class StorageTestCase(unittest.TestCase):
    """Memory backend, empty store, no cached clients."""

    env = MEMORY_ENV

    def setUp(self):
        patcher = patch.dict(os.environ, self.env)
        patcher.start()
        self.addCleanup(patcher.stop)
        reset_memory_store()
        reset_clients()
        self.addCleanup(reset_memory_store)
        self.addCleanup(reset_clients)


# ============================================================
# Hour keys
# ============================================================

class TestHourKey(unittest.TestCase):

    def test_utc_hour_key_format(self):
        dt = datetime(2026, 2, 2, 18, 59, 59, tzinfo=timezone.utc)
        self.assertEqual(utc_hour_key(dt), "2026-02-02T18")

    def test_aware_datetimes_convert_to_utc(self):
        plus_two = timezone(timedelta(hours=2))
        dt = datetime(2026, 2, 2, 1, 30, tzinfo=plus_two)
        self.assertEqual(utc_hour_key(dt), "2026-02-01T23")

    def test_prev_hour_crosses_day_and_year(self):
        self.assertEqual(prev_utc_hour_key("2026-02-02T00"), "2026-02-01T23")
        self.assertEqual(prev_utc_hour_key("2026-01-01T00"), "2025-12-31T23")

    def test_prev_hour_malformed_unchanged(self):
        for bad in ("", "garbage", "2026-02-02", "2026-13-40T99"):
            self.assertEqual(prev_utc_hour_key(bad), bad)

    def test_parse_hour_key(self):
        self.assertEqual(parse_hour_key("2026-02-02T18"),
                         datetime(2026, 2, 2, 18, tzinfo=timezone.utc))
        self.assertIsNone(parse_hour_key("2026-02-30T18"))

    def test_date_key(self):
        self.assertEqual(utc_date_key(datetime(2026, 2, 2, 23, tzinfo=timezone.utc)), "2026-02-02")
        self.assertTrue(is_date_key("2026-02-02"))
        self.assertFalse(is_date_key("2026-02-30"))
        self.assertFalse(is_date_key("02/02/2026"))


class TestKeys(unittest.TestCase):

    def test_market_keys(self):
        self.assertEqual(keys.market_hour_key("2026-02-02T18"), "fx:market:v2:hour:2026-02-02T18")
        self.assertEqual(keys.market_hour_lock_key("2026-02-02T18"), "fx:lock:market:v2:hour:2026-02-02T18")

    def test_account_and_leaderboard_keys(self):
        self.assertEqual(keys.player_account_key("p1"), "fx:acct:p1")
        self.assertEqual(keys.leaderboard_key("2026-02-02T18"), "fx:lb:2026-02-02T18")

    def test_profile_keys(self):
        self.assertEqual(keys.profile_key_for("daily", "2026-02-02", "2026-02-02"),
                         "pg:profile:v1:daily:2026-02-02")
        self.assertEqual(keys.profile_key_for("debug-random", "abc", "2026-02-02"),
                         "pg:profile:v1:random:abc")
        self.assertEqual(keys.profile_lock_key_for("debug-random", "abc"),
                         "pg:lock:profile:v1:random:abc")


# ============================================================
# Memory backend
# ============================================================

class TestMemoryBackend(StorageTestCase):

    def test_active_backend_memory(self):
        self.assertEqual(active_backend(), "memory")

    def test_set_returns_exact_text(self):
        raw = kv_set_json("k", {"b": 1, "name": "Æther"})
        self.assertEqual(raw, '{"b":1,"name":"Æther"}')
        self.assertEqual(kv_get_raw("k"), raw)
        self.assertEqual(kv_get_json("k"), {"b": 1, "name": "Æther"})

    def test_missing_and_delete(self):
        self.assertIsNone(kv_get_json("nope"))
        kv_set_json("k", [1, 2])
        kv_delete("k")
        self.assertIsNone(kv_get_json("k"))

    def test_undecodable_reads_as_none(self):
        storage._mem_set("bad", "{not json")
        self.assertIsNone(kv_get_json("bad"))

    def test_ttl_expiry(self):
        with patch("config.storage.time.time", return_value=1000.0):
            kv_set_json("k", {"a": 1}, ex_seconds=10)
        with patch("config.storage.time.time", return_value=1009.0):
            self.assertEqual(kv_get_json("k"), {"a": 1})
        with patch("config.storage.time.time", return_value=1011.0):
            self.assertIsNone(kv_get_json("k"))

    def test_lock_is_exclusive_until_ttl(self):
        with patch("config.storage.time.time", return_value=1000.0):
            first = kv_try_acquire_lock("lock", 55)
            second = kv_try_acquire_lock("lock", 55)
        self.assertIsNotNone(first)
        self.assertIsNone(second)
        with patch("config.storage.time.time", return_value=1056.0):
            third = kv_try_acquire_lock("lock", 55)
        self.assertIsNotNone(third)
        self.assertNotEqual(first, third)

    def test_set_if_absent_keeps_first_writer(self):
        first = kv_set_json_if_absent("state", {"v": 1}, ex_seconds=60)
        second = kv_set_json_if_absent("state", {"v": 2}, ex_seconds=60)
        self.assertEqual(first, '{"v":1}')
        self.assertIsNone(second)
        self.assertEqual(kv_get_json("state"), {"v": 1})

    def test_set_if_absent_after_expiry(self):
        with patch("config.storage.time.time", return_value=1000.0):
            kv_set_json_if_absent("state", {"v": 1}, ex_seconds=10)
        with patch("config.storage.time.time", return_value=1011.0):
            self.assertIsNotNone(kv_set_json_if_absent("state", {"v": 2}, ex_seconds=10))
            self.assertEqual(kv_get_json("state"), {"v": 2})

    def test_wait_returns_value_once_published(self):
        calls = []

        def publish_on_second_sleep(seconds):
            calls.append(seconds)
            if len(calls) == 2:
                kv_set_json("state", {"ready": True})

        with patch("config.storage.time.sleep", side_effect=publish_on_second_sleep):
            value = kv_wait_for_json("state", timeout=25)
        self.assertEqual(value, {"ready": True})
        self.assertEqual(calls, [0.25, 0.5])

    def test_wait_backoff_caps_and_times_out(self):
        with patch("config.storage.time.sleep") as sleep:
            value = kv_wait_for_json("never", timeout=5, initial_delay=0.25, max_delay=2.0)
        self.assertIsNone(value)
        pauses = [c.args[0] for c in sleep.call_args_list]
        self.assertEqual(pauses[:4], [0.25, 0.5, 1.0, 2.0])
        self.assertLessEqual(max(pauses), 2.0)
        self.assertAlmostEqual(sum(pauses), 5.0)


# ============================================================
# Remote backends
# ============================================================

class TestRedisFallback(StorageTestCase):

    env = {"KV_REST_API_URL": "", "KV_REST_API_TOKEN": "", "REDIS_URL": "redis://localhost:6390/0"}

    def test_active_backend_redis(self):
        self.assertEqual(active_backend(), "redis")

    def test_connection_failure_falls_back_to_memory(self):
        with patch("config.storage.redis.from_url", side_effect=redis.ConnectionError("refused")):
            kv_set_json("k", {"a": 1})
            self.assertEqual(kv_get_json("k"), {"a": 1})
            token = kv_try_acquire_lock("lock", 30)
            self.assertIsNotNone(token)
            self.assertIsNone(kv_try_acquire_lock("lock", 30))

    def test_uses_redis_when_available(self):
        conn = MagicMock()
        conn.get.return_value = '{"a":2}'
        conn.set.return_value = True
        with patch("config.storage.redis.from_url", return_value=conn) as from_url:
            kv_set_json("k", {"a": 2}, ex_seconds=60)
            self.assertEqual(kv_get_json("k"), {"a": 2})
            self.assertIsNotNone(kv_try_acquire_lock("lock", 55))
        from_url.assert_called_once_with("redis://localhost:6390/0", decode_responses=True)
        conn.set.assert_any_call("k", '{"a":2}', ex=60)
        conn.set.assert_any_call("lock", unittest.mock.ANY, nx=True, ex=55)
        # Nothing leaked into the memory map
        self.assertEqual(storage._memory_store, {})

    def test_set_if_absent_uses_redis_nx(self):
        conn = MagicMock()
        conn.set.return_value = None
        with patch("config.storage.redis.from_url", return_value=conn):
            self.assertIsNone(kv_set_json_if_absent("k", {"a": 3}, ex_seconds=60))
        conn.set.assert_called_once_with("k", '{"a":3}', nx=True, ex=60)


class TestManagedKV(StorageTestCase):

    env = {"KV_REST_API_URL": "https://kv.example.com/", "KV_REST_API_TOKEN": "tok-123", "REDIS_URL": ""}

    def _response(self, payload):
        resp = MagicMock()
        resp.json.return_value = payload
        resp.raise_for_status.return_value = None
        return resp

    def test_kv_takes_priority(self):
        with patch.dict(os.environ, {"REDIS_URL": "redis://ignored"}):
            self.assertEqual(active_backend(), "kv")

    def test_get_sends_command_array(self):
        with patch("config.storage.httpx.post", return_value=self._response({"result": '{"a":1}'})) as post:
            self.assertEqual(kv_get_json("fx:acct:p1"), {"a": 1})
        args, kwargs = post.call_args
        self.assertEqual(args[0], "https://kv.example.com")
        self.assertEqual(kwargs["json"], ["GET", "fx:acct:p1"])
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer tok-123")

    def test_set_with_ttl_and_lock(self):
        with patch("config.storage.httpx.post", return_value=self._response({"result": "OK"})) as post:
            kv_set_json("k", {"a": 1}, ex_seconds=120)
            token = kv_try_acquire_lock("lock", 55)
        self.assertEqual(post.call_args_list[0].kwargs["json"], ["SET", "k", '{"a":1}', "EX", "120"])
        lock_cmd = post.call_args_list[1].kwargs["json"]
        self.assertEqual(lock_cmd[:2], ["SET", "lock"])
        self.assertEqual(lock_cmd[3:], ["NX", "EX", "55"])
        self.assertEqual(lock_cmd[2], token)

    def test_set_if_absent_sends_nx(self):
        with patch("config.storage.httpx.post", return_value=self._response({"result": None})) as post:
            self.assertIsNone(kv_set_json_if_absent("k", {"a": 1}, ex_seconds=60))
        self.assertEqual(post.call_args.kwargs["json"], ["SET", "k", '{"a":1}', "NX", "EX", "60"])

    def test_lock_not_acquired(self):
        with patch("config.storage.httpx.post", return_value=self._response({"result": None})):
            self.assertIsNone(kv_try_acquire_lock("lock", 55))

    def test_error_payload_falls_back_to_memory(self):
        with patch("config.storage.httpx.post", return_value=self._response({"error": "WRONGPASS"})):
            kv_set_json("k", {"a": 1})
            self.assertEqual(kv_get_json("k"), {"a": 1})
        self.assertIn("k", storage._memory_store)

    def test_json_result_normalized(self):
        with patch("config.storage.httpx.post", return_value=self._response({"result": {"a": 1}})):
            self.assertEqual(json.loads(kv_get_raw("k")), {"a": 1})


if __name__ == "__main__":
    import logging
    logging.disable(logging.WARNING)

    unittest.main(verbosity=2)
