"""
Tests for the chat client, its response cache and tool-call parsing, and for
the embedding helpers. No network access: the OpenAI client is replaced.
"""
import shutil
import tempfile
import time
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest import mock

import numpy as np

from llm.chat_client import ChatClient, ResponseCache, _parse_tool_calls
from llm.embedders import SentenceTransformerEmbedder, _normalize


def fake_completion(content="Friday [1]", tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason="stop")],
        model="deepseek-chat",
        usage=SimpleNamespace(prompt_tokens=40, completion_tokens=5, total_tokens=45),
    )


def fake_tool_call(call_id, name, arguments):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


class TestResponseCache(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.cache_path = Path(self.temp_dir) / "cache" / "llm_cache.db"

    def tearDown(self):
        if Path(self.temp_dir).exists():
            shutil.rmtree(self.temp_dir)

    def test_cache_initialization(self):
        ResponseCache(str(self.cache_path))
        self.assertTrue(self.cache_path.exists())

    def test_put_get_and_summary(self):
        cache = ResponseCache(str(self.cache_path))
        cache.put("key-1", "deepseek-chat", {"content": "hi", "tool_calls": [], "usage": {"total_tokens": 25}})

        self.assertEqual(cache.get("key-1")["content"], "hi")
        self.assertEqual(cache.get("key-1")["content"], "hi")
        self.assertIsNone(cache.get("missing"))
        self.assertEqual(cache.summary(), {"entries": 1, "tokens_saved": 50})

    def test_prune_keeps_recently_used(self):
        cache = ResponseCache(str(self.cache_path))
        cache.put("stale", "m", {"content": "a"})
        cache.put("used", "m", {"content": "b"})
        later = time.time() + 40 * 86400
        with mock.patch("llm.chat_client.time.time", return_value=later):
            cache.get("used")
        with mock.patch("llm.chat_client.time.time", return_value=later + 1):
            self.assertEqual(cache.prune(max_age_days=30), 1)
        self.assertIsNone(cache.get("stale"))
        self.assertIsNotNone(cache.get("used"))


class TestChatClient(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.client = ChatClient(api_key="test-key", cache_path=str(Path(self.temp_dir) / "llm_cache.db"))
        self.client.client = mock.MagicMock()
        self.create = self.client.client.chat.completions.create
        self.messages = [{"role": "user", "content": "When do we deploy?"}]

    def tearDown(self):
        if Path(self.temp_dir).exists():
            shutil.rmtree(self.temp_dir)

    def test_missing_key_rejected(self):
        with mock.patch.dict("os.environ", {}, clear=True):
            with self.assertRaises(ValueError):
                ChatClient(cache_enabled=False)

    def test_result_shape(self):
        self.create.return_value = fake_completion()
        result = self.client.chat_completion(self.messages)
        self.assertEqual(result["content"], "Friday [1]")
        self.assertEqual(result["tool_calls"], [])
        self.assertEqual(result["usage"]["total_tokens"], 45)
        self.assertEqual(result["finish_reason"], "stop")
        self.assertNotIn("tools", self.create.call_args.kwargs)

    def test_repeated_call_hits_cache(self):
        self.create.return_value = fake_completion()
        first = self.client.chat_completion(self.messages)
        second = self.client.chat_completion(self.messages)

        self.assertEqual(first, second)
        self.assertEqual(self.create.call_count, 1)
        stats = self.client.get_stats()
        self.assertEqual((stats["cache_hits"], stats["api_calls"]), (1, 1))
        self.assertEqual(stats["prompt_tokens"], 40)
        self.assertEqual(stats["cache_hit_rate"], 0.5)
        self.assertEqual(stats["cache"]["entries"], 1)

    def test_sampled_requests_bypass_cache(self):
        self.create.return_value = fake_completion()
        self.client.chat_completion(self.messages, temperature=0.7)
        self.client.chat_completion(self.messages, temperature=0.7)
        self.assertEqual(self.create.call_count, 2)

    def test_tools_change_the_request_key(self):
        tools = [{"type": "function", "function": {"name": "web_search", "parameters": {}}}]
        plain = {"model": "m", "messages": self.messages, "temperature": 0.0}
        key_plain = ChatClient.request_key(plain)
        key_tools = ChatClient.request_key(dict(plain, tools=tools))
        self.assertNotEqual(key_plain, key_tools)
        self.assertEqual(key_tools, ChatClient.request_key(dict(plain, tools=tools)))

    def test_use_cache_false_always_calls(self):
        self.create.return_value = fake_completion()
        self.client.chat_completion(self.messages, use_cache=False)
        self.client.chat_completion(self.messages, use_cache=False)
        self.assertEqual(self.create.call_count, 2)

    def test_tool_calls_are_parsed(self):
        self.create.return_value = fake_completion(
            content=None, tool_calls=[fake_tool_call("c1", "web_search", '{"query": "release"}')]
        )
        tools = [{"type": "function", "function": {"name": "web_search", "parameters": {}}}]
        result = self.client.chat_completion(self.messages, tools=tools)

        self.assertEqual(result["tool_calls"], [{"id": "c1", "name": "web_search", "arguments": {"query": "release"}}])
        self.assertEqual(self.create.call_args.kwargs["tools"], tools)


class TestParseToolCalls(unittest.TestCase):
    def test_non_json_arguments_are_kept_raw(self):
        message = SimpleNamespace(tool_calls=[fake_tool_call("c1", "web_search", "not json")])
        self.assertEqual(_parse_tool_calls(message)[0]["arguments"], {"_raw": "not json"})

    def test_no_tool_calls(self):
        self.assertEqual(_parse_tool_calls(SimpleNamespace(tool_calls=None)), [])


class TestEmbedderHelpers(unittest.TestCase):
    def test_e5_prefixes(self):
        prefixed = SentenceTransformerEmbedder._prefixed
        self.assertEqual(prefixed("hi", "intfloat/e5-small-v2", "query"), "query: hi")
        self.assertEqual(prefixed("hi", "intfloat/e5-small-v2", "passage"), "passage: hi")
        self.assertEqual(prefixed("hi", "all-MiniLM-L6-v2", "query"), "hi")

    def test_normalize(self):
        self.assertAlmostEqual(float(np.linalg.norm(_normalize([3.0, 4.0]))), 1.0, places=6)
        self.assertEqual(_normalize([0.0, 0.0]), [0.0, 0.0])


if __name__ == "__main__":
    unittest.main()
