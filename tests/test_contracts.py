"""
Unit tests for the capability and component contracts.

Checks that the concrete implementations and the test doubles expose the
methods the core calls through each protocol.
"""
import inspect
import unittest

from rag.contracts import ChatModel, Composer, EmbeddingProvider, Retriever, ToolInvoker
from rag.generators.answer_composer import AnswerComposer
from rag.retrievers.dense_retriever import ChatRetriever
from rag.tools import ToolRegistry
from llm.chat_client import ChatClient
from llm.embedders import OpenAIEmbedder, SentenceTransformerEmbedder
from fakes import KeywordEmbedder, ScriptedChatModel


def protocol_methods(protocol):
    return [
        name for name, member in vars(protocol).items()
        if callable(member) and not name.startswith("_")
    ]


class ContractTestCase(unittest.TestCase):
    def assertImplements(self, cls, protocol):
        for name in protocol_methods(protocol):
            self.assertTrue(callable(getattr(cls, name, None)), f"{cls.__name__} lacks {name}")
            expected = list(inspect.signature(getattr(protocol, name)).parameters)
            actual = list(inspect.signature(getattr(cls, name)).parameters)
            for param in expected:
                if param == "kwargs":
                    continue
                self.assertIn(param, actual, f"{cls.__name__}.{name} lacks parameter {param}")


class TestEmbeddingProviderProtocol(ContractTestCase):
    def test_implementations(self):
        for cls in (SentenceTransformerEmbedder, OpenAIEmbedder, KeywordEmbedder):
            self.assertImplements(cls, EmbeddingProvider)

    def test_query_and_passage_share_dimension(self):
        embedder = KeywordEmbedder(["deploy", "lunch"])
        self.assertEqual(len(embedder.embed("deploy", "m")), len(embedder.embed_query("lunch", "m")))


class TestChatModelProtocol(ContractTestCase):
    def test_implementations(self):
        for cls in (ChatClient, ScriptedChatModel):
            self.assertImplements(cls, ChatModel)

    def test_response_shape(self):
        response = ScriptedChatModel(["Friday [1]"]).chat_completion([{"role": "user", "content": "q"}])
        self.assertEqual(set(response), {"content", "tool_calls"})
        self.assertEqual(response["tool_calls"], [])


class TestToolInvokerProtocol(ContractTestCase):
    def test_registry(self):
        self.assertImplements(ToolRegistry, ToolInvoker)
        result = ToolRegistry().invoke("missing", {})
        self.assertIn(result.status, {"ok", "timeout", "error", "unknown_tool"})


class TestComponentProtocols(ContractTestCase):
    def test_retriever(self):
        self.assertImplements(ChatRetriever, Retriever)

    def test_composer(self):
        self.assertImplements(AnswerComposer, Composer)


if __name__ == "__main__":
    unittest.main()
