"""
OpenAI-compatible chat client with caching, retries and tool calling.

Works against any OpenAI-compatible endpoint (DeepSeek by default):
- Result caching with deterministic keys
- Retries with exponential backoff on API errors
- Tool calls returned as plain dicts
"""
import os
import time
import hashlib
import json
import logging
from typing import List, Dict, Any, Optional
from pathlib import Path
import sqlite3
from openai import OpenAI, APIError, APITimeoutError, APIConnectionError, RateLimitError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from knowledge.errors import TransientCapabilityFailure


logger = logging.getLogger(__name__)

_RETRYABLE = (APITimeoutError, APIConnectionError, RateLimitError)


class ResponseCache:
    """
    SQLite cache of chat completions, keyed by a hash of the full request.
    """

    def __init__(self, cache_path: str = "data/cache/llm_cache.db"):
        self.cache_path = Path(cache_path)
        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.cache_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS chat_responses (
                    cache_key TEXT PRIMARY KEY,
                    model TEXT NOT NULL,
                    response TEXT NOT NULL,
                    total_tokens INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL,
                    last_hit_at REAL,
                    hit_count INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_chat_responses_used ON chat_responses(created_at, last_hit_at)")

    def get(self, cache_key: str) -> Optional[Dict[str, Any]]:
        """Cached response dict, or None. A hit refreshes the entry's last use."""
        with sqlite3.connect(self.cache_path) as conn:
            row = conn.execute(
                "SELECT response FROM chat_responses WHERE cache_key = ?", (cache_key,)
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "UPDATE chat_responses SET hit_count = hit_count + 1, last_hit_at = ? WHERE cache_key = ?",
                (time.time(), cache_key),
            )
        return json.loads(row[0])

    def put(self, cache_key: str, model: str, response: Dict[str, Any]) -> None:
        total_tokens = (response.get("usage") or {}).get("total_tokens", 0)
        with sqlite3.connect(self.cache_path) as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO chat_responses (cache_key, model, response, total_tokens, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (cache_key, model, json.dumps(response), total_tokens, time.time()),
            )

    def prune(self, max_age_days: int = 30) -> int:
        """Drop entries not written or hit within `max_age_days`. Returns rows removed."""
        cutoff = time.time() - max_age_days * 86400
        with sqlite3.connect(self.cache_path) as conn:
            cur = conn.execute(
                "DELETE FROM chat_responses WHERE MAX(created_at, COALESCE(last_hit_at, 0)) < ?",
                (cutoff,),
            )
            return cur.rowcount

    def summary(self) -> Dict[str, Any]:
        with sqlite3.connect(self.cache_path) as conn:
            entries, tokens_saved = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(total_tokens * hit_count), 0) FROM chat_responses"
            ).fetchone()
        return {"entries": entries, "tokens_saved": tokens_saved}


def _parse_tool_calls(message) -> List[Dict[str, Any]]:
    calls = []
    for call in getattr(message, "tool_calls", None) or []:
        raw_args = call.function.arguments or "{}"
        try:
            args = json.loads(raw_args)
        except ValueError:
            logger.warning(f"Tool call {call.id} has non-JSON arguments")
            args = {"_raw": raw_args}
        calls.append({"id": call.id, "name": call.function.name, "arguments": args})
    return calls


class ChatClient:
    """
    Chat model client implementing the ChatModel contract.

    API failures surface as TransientCapabilityFailure after retries, so the
    composer can turn them into an abstention. Only temperature-0 requests are
    served from or written to the response cache.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = "https://api.deepseek.com",
        default_model: str = "deepseek-chat",
        cache_enabled: bool = True,
        cache_path: str = "data/cache/llm_cache.db",
        timeout: float = 60.0,
    ):
        """
        Args:
            api_key: API key (or from LLM_API_KEY / DEEPSEEK_API_KEY env vars)
            base_url: OpenAI-compatible endpoint
            default_model: Model used when a call names none
            cache_enabled: Whether to use the response cache
            cache_path: Path to the cache database
            timeout: Per-request HTTP timeout in seconds
        """
        api_key = api_key or os.getenv("LLM_API_KEY") or os.getenv("DEEPSEEK_API_KEY")
        if not api_key:
            raise ValueError("LLM API key not provided and LLM_API_KEY env var not set")

        self.client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        self.default_model = default_model
        self.cache = ResponseCache(cache_path) if cache_enabled else None
        self.usage = {"prompt_tokens": 0, "completion_tokens": 0, "cache_hits": 0, "api_calls": 0}

    @staticmethod
    def request_key(params: Dict[str, Any]) -> str:
        """Deterministic hash of a request (messages, model, sampling, tools)."""
        normalized = json.dumps(params, sort_keys=True, default=str, ensure_ascii=False)
        return hashlib.sha256(normalized.encode("utf-8")).hexdigest()

    @retry(
        retry=retry_if_exception_type(_RETRYABLE),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True
    )
    def _create(self, **params):
        return self.client.chat.completions.create(**params)

    @staticmethod
    def _to_result(response) -> Dict[str, Any]:
        choice = response.choices[0]
        usage = response.usage
        return {
            "content": choice.message.content,
            "tool_calls": _parse_tool_calls(choice.message),
            "model": response.model,
            "finish_reason": choice.finish_reason,
            "usage": {
                "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
                "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
                "total_tokens": getattr(usage, "total_tokens", 0) or 0,
            },
        }

    def chat_completion(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        temperature: float = 0.0,
        max_tokens: int = 1024,
        tools: Optional[List[Dict[str, Any]]] = None,
        use_cache: bool = True,
        **kwargs
    ) -> Dict[str, Any]:
        """
        Run one chat turn.

        Returns:
            Dict with 'content', 'tool_calls', 'model', 'finish_reason', 'usage'
        """
        params: Dict[str, Any] = dict(
            model=model or self.default_model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs
        )
        if tools:
            params["tools"] = tools

        cache_key = None
        if self.cache is not None and use_cache and temperature == 0:
            cache_key = self.request_key(params)
            cached = self.cache.get(cache_key)
            if cached is not None:
                self.usage["cache_hits"] += 1
                logger.debug(f"Response cache hit {cache_key[:8]}")
                return cached

        logger.debug(f"Chat API call: model={params['model']} messages={len(messages)} tools={len(tools or [])}")
        try:
            response = self._create(**params)
        except APIError as e:
            raise TransientCapabilityFailure(f"chat completion failed: {e}", capability="chat") from e

        result = self._to_result(response)
        self.usage["api_calls"] += 1
        self.usage["prompt_tokens"] += result["usage"]["prompt_tokens"]
        self.usage["completion_tokens"] += result["usage"]["completion_tokens"]

        if cache_key is not None:
            self.cache.put(cache_key, params["model"], result)
        return result

    def get_stats(self) -> Dict[str, Any]:
        """Token usage and cache statistics for this client."""
        lookups = self.usage["cache_hits"] + self.usage["api_calls"]
        stats = dict(self.usage)
        stats["total_tokens"] = stats["prompt_tokens"] + stats["completion_tokens"]
        stats["cache_hit_rate"] = stats["cache_hits"] / lookups if lookups else 0.0
        if self.cache is not None:
            stats["cache"] = self.cache.summary()
        return stats
