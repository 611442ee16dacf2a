"""
Answer composer: retrieved chunks + optional tool calls -> grounded answer.

The chat model may request tool invocations (e.g. web search). The loop is
bounded by a tool-step budget, a per-step timeout and a per-question
deadline; when a bound is hit the model is asked once more for a final
answer without tools. Citations are resolved by CitationGuard against the
chunks placed in the prompt, never against anything else.
"""
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from knowledge.errors import InvariantViolation, TransientCapabilityFailure
from knowledge.models import Answer, RetrievalTrace, RetrievedChunk, ToolInvocation
from rag.contracts import ChatModel, ToolInvoker
from rag.generators import prompts
from rag.guardrails.citation_guard import CitationGuard, abstention


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ComposerConfig:
    model: Optional[str] = None
    temperature: float = 0.0
    max_tokens: int = 1024
    max_context_chunks: int = 8
    max_chunk_chars: int = 4000
    max_tool_steps: int = 3
    step_timeout_seconds: float = 20.0
    question_timeout_seconds: float = 90.0
    require_citations: bool = True
    quote_chars: int = 200


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"_raw": parsed}


class AnswerComposer:
    """
    Produces an Answer for one question from one chat's retrieved chunks.
    """

    def __init__(
        self,
        llm_client: ChatModel,
        tools: Optional[ToolInvoker] = None,
        cfg: Optional[ComposerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.llm_client = llm_client
        self.tools = tools
        self.cfg = cfg or ComposerConfig()
        self.guard = CitationGuard(self.cfg.require_citations, self.cfg.quote_chars)
        self.clock = clock

    def _step_executor(self) -> ThreadPoolExecutor:
        """
        One executor per question. A timed-out step keeps its thread until the
        call returns, so every tool step plus the final completion gets a slot.
        """
        return ThreadPoolExecutor(max_workers=self.cfg.max_tool_steps + 1, thread_name_prefix="composer")

    @staticmethod
    def _bounded(executor: ThreadPoolExecutor, fn: Callable[[], Any], timeout: float, what: str) -> Any:
        """Run fn on `executor`, raising TimeoutError after `timeout`."""
        if timeout <= 0:
            raise TimeoutError(f"{what}: question deadline reached")
        future = executor.submit(fn)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            raise TimeoutError(f"{what} exceeded {timeout:.1f}s")

    def _call_llm(
        self, executor: ThreadPoolExecutor, messages: List[Dict[str, Any]], tools, timeout: float
    ) -> Dict[str, Any]:
        def call():
            return self.llm_client.chat_completion(
                messages=messages,
                model=self.cfg.model,
                temperature=self.cfg.temperature,
                max_tokens=self.cfg.max_tokens,
                tools=tools,
            )

        try:
            return self._bounded(executor, call, timeout, "chat completion")
        except TimeoutError as e:
            raise TransientCapabilityFailure(str(e), capability="chat")

    def _invoke_tool(
        self, executor: ThreadPoolExecutor, step: int, call: Dict[str, Any], timeout: float
    ) -> ToolInvocation:
        name = call.get("name") or ""
        args = _parse_arguments(call.get("arguments"))
        start = time.time()
        try:
            result = self._bounded(executor, lambda: self.tools.invoke(name, args), timeout, f"tool {name}")
        except TimeoutError as e:
            invocation = ToolInvocation(step=step, tool_name=name, args=args, status="timeout", error=str(e))
        except Exception as e:
            invocation = ToolInvocation(
                step=step, tool_name=name, args=args, status="error", error=f"{type(e).__name__}: {e}"
            )
        else:
            invocation = ToolInvocation(
                step=step,
                tool_name=name,
                args=args,
                status=getattr(result, "status", "ok"),
                result=getattr(result, "output", None) if hasattr(result, "status") else str(result),
                error=getattr(result, "error", None),
            )
        invocation.elapsed_ms = (time.time() - start) * 1000

        logger.info(
            f"Tool step {step}: {name}({json.dumps(args, ensure_ascii=False)}) -> "
            f"{invocation.status} in {invocation.elapsed_ms:.0f}ms"
        )
        return invocation

    def _run_loop(
        self, executor: ThreadPoolExecutor, question: str, context: List[RetrievedChunk], trace: RetrievalTrace
    ) -> str:
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": prompts.SYSTEM_PROMPT},
            {
                "role": "user",
                "content": prompts.build_qa_prompt(
                    question, context, self.cfg.max_context_chunks, self.cfg.max_chunk_chars
                ),
            },
        ]
        schemas = self.tools.tool_schemas() if self.tools is not None else None
        deadline = self.clock() + self.cfg.question_timeout_seconds
        steps = 0
        forced = False

        while True:
            remaining = deadline - self.clock()
            allow_tools = bool(schemas) and not forced and steps < self.cfg.max_tool_steps and remaining > 0
            if schemas and not allow_tools and not forced:
                forced = True
                messages.append({"role": "user", "content": prompts.FINAL_ANSWER_INSTRUCTION})

            if remaining <= 0:
                # Deadline passed; the final attempt gets a single step timeout.
                remaining = self.cfg.step_timeout_seconds

            response = self._call_llm(
                executor,
                messages,
                schemas if allow_tools else None,
                min(self.cfg.step_timeout_seconds, remaining),
            )
            trace.llm_calls += 1

            calls = response.get("tool_calls") or []
            if not calls or not allow_tools:
                return response.get("content") or ""

            messages.append({
                "role": "assistant",
                "content": response.get("content"),
                "tool_calls": [
                    {
                        "id": c.get("id"),
                        "type": "function",
                        "function": {
                            "name": c.get("name"),
                            "arguments": c.get("arguments") if isinstance(c.get("arguments"), str)
                            else json.dumps(c.get("arguments") or {}),
                        },
                    }
                    for c in calls
                ],
            })

            for call in calls:
                step_left = min(self.cfg.step_timeout_seconds, deadline - self.clock())
                if steps >= self.cfg.max_tool_steps or step_left <= 0:
                    messages.append({"role": "tool", "tool_call_id": call.get("id"), "content": "Tool budget exhausted."})
                    continue
                steps += 1
                invocation = self._invoke_tool(executor, steps, call, step_left)
                trace.tool_invocations.append(invocation)
                messages.append({
                    "role": "tool",
                    "tool_call_id": call.get("id"),
                    "content": prompts.format_tool_result(invocation),
                })

    def compose(self, question: str, retrieved_chunks: List[RetrievedChunk]) -> Answer:
        """
        Compose a grounded answer, or abstain.

        Never raises: capability failures and invariant breaches become an
        abstention with a refusal_reason.
        """
        trace = RetrievalTrace(query=question, retrieved_chunks_count=len(retrieved_chunks))
        if retrieved_chunks:
            trace.chat_id = retrieved_chunks[0].chunk.chat_id

        if not retrieved_chunks:
            return abstention(question, "no_relevant_history", trace)

        context = list(retrieved_chunks[: self.cfg.max_context_chunks])
        trace.final_chunks_count = len(context)

        start = time.time()
        executor = self._step_executor()
        try:
            text = self._run_loop(executor, question, context, trace)
            answer = self.guard.apply(question, text, context, trace, {"num_context_chunks": len(context)})
        except InvariantViolation as e:
            logger.error(f"Invariant violation while composing: {e}")
            answer = abstention(question, "invariant_violation", trace, {"error": str(e)})
        except Exception as e:
            logger.error(f"Generation failed: {e}")
            answer = abstention(question, "generation_error", trace, {"error": str(e)})
        finally:
            # Hung steps finish on their own threads; nothing waits for them.
            executor.shutdown(wait=False)
        trace.generation_time_ms = (time.time() - start) * 1000

        logger.info(
            f"Composed answer: abstained={answer.abstained} citations={len(answer.citations)} "
            f"llm_calls={trace.llm_calls} tools={len(trace.tool_invocations)}"
        )
        return answer
