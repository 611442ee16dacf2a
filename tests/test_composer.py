"""
Tests for the answer composer, its citation guard and the tool registry.
"""
import threading
import unittest

from knowledge.errors import InvariantViolation, TransientCapabilityFailure
from knowledge.models import Chunk, ChunkStatus, Citation, RetrievedChunk
from rag.generators.answer_composer import AnswerComposer, ComposerConfig
from rag.generators.prompts import FINAL_ANSWER_INSTRUCTION, SYSTEM_PROMPT, format_context
from rag.guardrails.citation_guard import NO_HISTORY_TEXT, CitationGuard, verify_citations
from rag.tools import ToolRegistry, register_web_search
from fakes import CHAT, FakeClock, ScriptedChatModel, at, tool_call


def make_retrieved(n: int, text: str = "alice: deploy on friday", score: float = 0.9, chat_id: int = CHAT) -> RetrievedChunk:
    chunk = Chunk(
        chunk_id=f"chunk-{n}",
        chat_id=chat_id,
        first_message_id=10 * n,
        last_message_id=10 * n + 2,
        time_range_start=at(30 * n),
        time_range_end=at(30 * n + 2),
        participant_set=["alice"],
        message_count=3,
        rendered_text=f"{text} ({n})",
        content_hash=f"hash-{n}",
        status=ChunkStatus.INDEXED,
    )
    return RetrievedChunk(chunk=chunk, score=score)


CONTEXT = [make_retrieved(1), make_retrieved(2), make_retrieved(3)]


def search_registry(func=None):
    registry = ToolRegistry()
    register_web_search(registry, func or (lambda query: f"results for {query}"))
    return registry


class ComposerTestCase(unittest.TestCase):
    def compose(self, responses, chunks=CONTEXT, tools=None, **cfg):
        self.llm = ScriptedChatModel(responses)
        self.composer = AnswerComposer(self.llm, tools=tools, cfg=ComposerConfig(**cfg))
        return self.composer.compose("When do we deploy?", chunks)


class TestGroundedAnswers(ComposerTestCase):
    def test_empty_retrieval_abstains_without_llm(self):
        answer = self.compose(["Friday [1]"], chunks=[])
        self.assertTrue(answer.abstained)
        self.assertEqual(answer.refusal_reason, "no_relevant_history")
        self.assertEqual(answer.text, NO_HISTORY_TEXT)
        self.assertEqual(self.llm.calls, [])

    def test_citations_resolve_to_context(self):
        answer = self.compose(["We deploy on Friday [2]."])
        self.assertFalse(answer.abstained)
        self.assertEqual(answer.cited_chunk_ids(), ["chunk-2"])
        citation = answer.citations[0]
        self.assertEqual((citation.first_message_id, citation.last_message_id), (20, 22))
        self.assertEqual(citation.chat_id, CHAT)
        self.assertEqual(citation.score, 0.9)
        self.assertTrue(citation.quote.startswith("alice: deploy"))
        self.assertEqual(answer.trace.final_chunks_count, 3)
        self.assertEqual(answer.trace.llm_calls, 1)

    def test_prompt_carries_numbered_excerpts(self):
        self.compose(["Friday [1]"])
        messages = self.llm.calls[0]["messages"]
        self.assertEqual(messages[0], {"role": "system", "content": SYSTEM_PROMPT})
        self.assertIn("[1] Messages #10-#12", messages[1]["content"])
        self.assertIn("[3] Messages #30-#32", messages[1]["content"])
        self.assertIn("When do we deploy?", messages[1]["content"])
        self.assertIsNone(self.llm.calls[0]["tools"])

    def test_out_of_range_markers_are_stripped(self):
        answer = self.compose(["Friday [1], maybe Monday [7]."])
        self.assertEqual(answer.text, "Friday [1], maybe Monday.")
        self.assertEqual(answer.cited_chunk_ids(), ["chunk-1"])
        self.assertEqual(answer.metadata["dropped_markers"], [7])

    def test_markers_beyond_context_cap_are_invalid(self):
        answer = self.compose(["Friday [3]"], max_context_chunks=2)
        self.assertTrue(answer.abstained)
        self.assertEqual(answer.refusal_reason, "ungrounded")
        self.assertEqual(answer.trace.final_chunks_count, 2)

    def test_uncited_answer_abstains(self):
        answer = self.compose(["We deploy on Friday."])
        self.assertTrue(answer.abstained)
        self.assertEqual(answer.refusal_reason, "ungrounded")
        self.assertEqual(answer.citations, [])

    def test_uncited_answer_allowed_when_not_required(self):
        answer = self.compose(["We deploy on Friday."], require_citations=False)
        self.assertFalse(answer.abstained)
        self.assertEqual(answer.text, "We deploy on Friday.")

    def test_no_answer_token_abstains(self):
        answer = self.compose(["NO_ANSWER"])
        self.assertTrue(answer.abstained)
        self.assertEqual(answer.refusal_reason, "insufficient_context")
        self.assertEqual(answer.citations, [])

    def test_quoted_refusal_wording_keeps_grounded_answer(self):
        answer = self.compose(["Alice said there was insufficient information to deploy, so it moved to Friday [1]."])
        self.assertFalse(answer.abstained)
        self.assertEqual(answer.cited_chunk_ids(), ["chunk-1"])

    def test_llm_failure_becomes_abstention(self):
        answer = self.compose([TransientCapabilityFailure("provider down", capability="chat")])
        self.assertTrue(answer.abstained)
        self.assertEqual(answer.refusal_reason, "generation_error")
        self.assertIn("provider down", answer.metadata["error"])

    def test_llm_step_timeout(self):
        release = threading.Event()
        self.addCleanup(release.set)

        def slow(messages, tools):
            release.wait(5)
            return {"content": "Friday [1]", "tool_calls": []}

        answer = self.compose([slow], step_timeout_seconds=0.1)
        self.assertTrue(answer.abstained)
        self.assertEqual(answer.refusal_reason, "generation_error")


class TestToolLoop(ComposerTestCase):
    def test_tool_result_is_fed_back(self):
        answer = self.compose(
            [tool_call("c1", "web_search", {"query": "release calendar"}), "Friday [1]"],
            tools=search_registry(),
        )
        self.assertFalse(answer.abstained)
        [invocation] = answer.trace.tool_invocations
        self.assertEqual((invocation.step, invocation.tool_name, invocation.status), (1, "web_search", "ok"))
        self.assertEqual(invocation.args, {"query": "release calendar"})
        self.assertEqual(invocation.result, "results for release calendar")

        second = self.llm.calls[1]["messages"]
        self.assertEqual(second[-2]["role"], "assistant")
        self.assertEqual(second[-2]["tool_calls"][0]["function"]["name"], "web_search")
        self.assertEqual(second[-1], {"role": "tool", "tool_call_id": "c1", "content": "results for release calendar"})
        self.assertEqual(answer.trace.llm_calls, 2)

    def test_step_budget_forces_final_answer_without_tools(self):
        answer = self.compose(
            [
                tool_call("c1", "web_search", {"query": "a"}),
                tool_call("c2", "web_search", {"query": "b"}),
                "Friday [1]",
            ],
            tools=search_registry(),
            max_tool_steps=2,
        )
        self.assertFalse(answer.abstained)
        self.assertEqual(len(answer.trace.tool_invocations), 2)
        self.assertIsNotNone(self.llm.calls[1]["tools"])
        final = self.llm.calls[2]
        self.assertIsNone(final["tools"])
        self.assertEqual(final["messages"][-1], {"role": "user", "content": FINAL_ANSWER_INSTRUCTION})

    def test_tool_requests_after_budget_are_not_executed(self):
        calls = []
        answer = self.compose(
            [tool_call("c1", "web_search", {"query": "a"})] * 3,
            tools=search_registry(lambda query: calls.append(query) or "r"),
            max_tool_steps=1,
        )
        self.assertEqual(calls, ["a"])
        self.assertEqual(len(answer.trace.tool_invocations), 1)
        self.assertTrue(answer.abstained)
        self.assertEqual(answer.refusal_reason, "insufficient_context")
        self.assertEqual(len(self.llm.calls), 2)

    def test_calls_past_budget_in_one_response_are_answered_without_running(self):
        both = {
            "content": None,
            "tool_calls": [
                {"id": "c1", "name": "web_search", "arguments": {"query": "a"}},
                {"id": "c2", "name": "web_search", "arguments": {"query": "b"}},
            ],
        }
        self.compose([both, "Friday [1]"], tools=search_registry(), max_tool_steps=1)
        tool_messages = [m for m in self.llm.calls[1]["messages"] if m["role"] == "tool"]
        self.assertEqual(tool_messages[1], {"role": "tool", "tool_call_id": "c2", "content": "Tool budget exhausted."})

    def test_tool_error_is_recorded_and_loop_continues(self):
        def broken(query):
            raise RuntimeError("search backend down")

        answer = self.compose(
            [tool_call("c1", "web_search", {"query": "a"}), "Friday [1]"],
            tools=search_registry(broken),
        )
        self.assertFalse(answer.abstained)
        invocation = answer.trace.tool_invocations[0]
        self.assertEqual(invocation.status, "error")
        self.assertIn("search backend down", invocation.error)
        tool_message = self.llm.calls[1]["messages"][-1]
        self.assertTrue(tool_message["content"].startswith("[tool web_search error]"))

    def test_unknown_tool(self):
        answer = self.compose([tool_call("c1", "calculator", {"expr": "1+1"}), "Friday [1]"], tools=search_registry())
        self.assertEqual(answer.trace.tool_invocations[0].status, "unknown_tool")

    def test_tool_step_timeout(self):
        release = threading.Event()
        self.addCleanup(release.set)

        def hangs(query):
            release.wait(5)
            return "late"

        answer = self.compose(
            [tool_call("c1", "web_search", {"query": "a"}), "Friday [1]"],
            tools=search_registry(hangs),
            step_timeout_seconds=0.1,
        )
        self.assertEqual(answer.trace.tool_invocations[0].status, "timeout")
        self.assertFalse(answer.abstained)

    def test_hung_tool_calls_do_not_starve_later_questions(self):
        release = threading.Event()
        self.addCleanup(release.set)

        def hangs(query):
            release.wait(30)
            return "late"

        llm = ScriptedChatModel([])
        composer = AnswerComposer(llm, tools=search_registry(hangs), cfg=ComposerConfig(step_timeout_seconds=0.2))
        for _ in range(4):
            llm.responses = [tool_call("c1", "web_search", {"query": "deploy"}), "Friday [1]"]
            answer = composer.compose("When do we deploy?", CONTEXT)
            self.assertEqual(answer.trace.tool_invocations[0].status, "timeout")
            self.assertFalse(answer.abstained)

        llm.responses = ["We deploy Friday [1]."]
        answer = composer.compose("When do we deploy?", CONTEXT)
        self.assertFalse(answer.abstained)
        self.assertEqual(answer.cited_chunk_ids(), ["chunk-1"])

    def test_question_deadline_forces_final_answer(self):
        clock = FakeClock()
        registry = ToolRegistry()
        registry.register("slow_lookup", lambda: clock.advance(120) or "done", description="Advances time")

        llm = ScriptedChatModel([tool_call("c1", "slow_lookup", {}), "Friday [1]"])
        composer = AnswerComposer(llm, tools=registry, cfg=ComposerConfig(question_timeout_seconds=90), clock=clock)
        answer = composer.compose("When?", CONTEXT)

        self.assertFalse(answer.abstained)
        self.assertIsNone(llm.calls[1]["tools"])
        self.assertEqual(llm.calls[1]["messages"][-1]["content"], FINAL_ANSWER_INSTRUCTION)


class TestCitationGuard(unittest.TestCase):
    def setUp(self):
        self.guard = CitationGuard()

    def test_extract_markers(self):
        self.assertEqual(self.guard.extract_markers("a [2] b [1] c [2]"), [1, 2])
        self.assertEqual(self.guard.extract_markers(""), [])

    def test_detect_refusal(self):
        self.assertTrue(self.guard.detect_refusal("NO_ANSWER"))
        self.assertTrue(self.guard.detect_refusal("   "))
        self.assertTrue(self.guard.detect_refusal("I cannot answer that from the chat."))
        self.assertFalse(self.guard.detect_refusal("Friday [1]"))

    def test_refusal_wording_inside_cited_answer_is_not_a_refusal(self):
        text = "Alice said there was insufficient information to deploy, so it moved to Friday [1]."
        self.assertFalse(self.guard.detect_refusal(text, num_chunks=3))
        answer = self.guard.apply("q", text, CONTEXT)
        self.assertFalse(answer.abstained)
        self.assertEqual(answer.cited_chunk_ids(), ["chunk-1"])

    def test_refusal_with_only_unresolvable_markers(self):
        self.assertTrue(self.guard.detect_refusal("I cannot answer that [7].", num_chunks=3))
        self.assertFalse(self.guard.detect_refusal("The release notes [2] are not mentioned in the chat.", num_chunks=3))
        self.assertTrue(self.guard.detect_refusal("NO_ANSWER [1]", num_chunks=3))

    def test_quote_is_truncated(self):
        guard = CitationGuard(quote_chars=10)
        answer = guard.apply("q", "Friday [1]", CONTEXT)
        self.assertEqual(answer.citations[0].quote, "alice: dep...")

    def test_link_for_supergroup(self):
        retrieved = make_retrieved(1, chat_id=-1001234567890)
        answer = self.guard.apply("q", "Friday [1]", [retrieved])
        self.assertEqual(answer.citations[0].link, "https://t.me/c/1234567890/10")

    def test_verify_citations_rejects_unretrieved_chunk(self):
        answer = self.guard.apply("q", "Friday [1]", CONTEXT)
        verify_citations(answer.citations, CONTEXT)
        with self.assertRaises(InvariantViolation):
            verify_citations(answer.citations, CONTEXT[1:])


class TestToolRegistry(unittest.TestCase):
    def test_register_and_schemas(self):
        registry = search_registry()
        registry.register("b_tool", lambda: 1, description="B")
        self.assertEqual(registry.names, ["b_tool", "web_search"])
        schema = registry.tool_schemas()[1]
        self.assertEqual(schema["type"], "function")
        self.assertEqual(schema["function"]["name"], "web_search")
        self.assertEqual(schema["function"]["parameters"]["required"], ["query"])

    def test_duplicate_registration_rejected(self):
        registry = search_registry()
        with self.assertRaises(ValueError):
            register_web_search(registry, lambda q: q)

    def test_invoke_statuses(self):
        registry = ToolRegistry(max_output_chars=5)

        def times_out():
            raise TimeoutError("too slow")

        def fails():
            raise KeyError("x")

        registry.register("echo", lambda text: {"text": text}, description="Echo")
        registry.register("times_out", times_out, description="T")
        registry.register("fails", fails, description="F")

        ok = registry.invoke("echo", {"text": "hello"})
        self.assertTrue(ok.ok)
        self.assertEqual(ok.output, '{"tex...')
        self.assertEqual(registry.invoke("times_out", {}).status, "timeout")
        failed = registry.invoke("fails", {})
        self.assertEqual(failed.status, "error")
        self.assertTrue(failed.error.startswith("KeyError"))
        self.assertEqual(registry.invoke("missing", {}).status, "unknown_tool")

    def test_format_context_truncates_long_chunks(self):
        text = format_context([make_retrieved(1, text="x" * 50)], max_chunk_chars=10)
        self.assertIn("x" * 10 + "\n...", text)
        self.assertNotIn("x" * 11, text)


if __name__ == "__main__":
    unittest.main()
