"""
Tool registry for the composer's tool-calling loop.

Tools are plain callables registered with a JSON schema. The registry only
dispatches and normalizes results; concrete tools such as web search are
provided by the caller.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional


logger = logging.getLogger(__name__)


@dataclass
class ToolResult:
    status: str  # 'ok' | 'timeout' | 'error' | 'unknown_tool'
    output: Optional[str] = None
    error: Optional[str] = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass
class Tool:
    name: str
    func: Callable[..., Any]
    description: str
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def _stringify(value: Any, max_chars: int) -> str:
    if isinstance(value, str):
        text = value
    else:
        text = json.dumps(value, ensure_ascii=False, default=str)
    if len(text) > max_chars:
        text = text[:max_chars] + "..."
    return text


class ToolRegistry:
    """
    Name -> tool mapping implementing the ToolInvoker contract.
    """

    def __init__(self, max_output_chars: int = 4000):
        self.max_output_chars = max_output_chars
        self._tools: Dict[str, Tool] = {}

    def register(
        self,
        name: str,
        func: Callable[..., Any],
        description: str,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> None:
        if name in self._tools:
            raise ValueError(f"Tool already registered: {name}")
        self._tools[name] = Tool(
            name=name,
            func=func,
            description=description,
            parameters=parameters or {"type": "object", "properties": {}},
        )
        logger.info(f"Registered tool: {name}")

    @property
    def names(self) -> List[str]:
        return sorted(self._tools)

    def tool_schemas(self) -> List[Dict[str, Any]]:
        return [self._tools[name].schema() for name in self.names]

    def invoke(self, tool_name: str, args: Dict[str, Any]) -> ToolResult:
        tool = self._tools.get(tool_name)
        if tool is None:
            return ToolResult(status="unknown_tool", error=f"No tool named {tool_name!r}")

        start = time.time()
        try:
            output = tool.func(**(args or {}))
        except TimeoutError as e:
            return ToolResult(status="timeout", error=str(e) or "timed out", elapsed_ms=(time.time() - start) * 1000)
        except Exception as e:
            logger.warning(f"Tool {tool_name} raised: {e}")
            return ToolResult(status="error", error=f"{type(e).__name__}: {e}", elapsed_ms=(time.time() - start) * 1000)

        return ToolResult(
            status="ok",
            output=_stringify(output, self.max_output_chars),
            elapsed_ms=(time.time() - start) * 1000,
        )


def register_web_search(registry: ToolRegistry, search: Callable[[str], Any]) -> None:
    """
    Expose a caller-provided search function as the `web_search` tool.
    """
    registry.register(
        "web_search",
        lambda query: search(query),
        description=(
            "Search the web for facts that are not in the chat history. "
            "Use only when the chat excerpts do not answer the question."
        ),
        parameters={
            "type": "object",
            "properties": {"query": {"type": "string", "description": "Search query"}},
            "required": ["query"],
        },
    )
