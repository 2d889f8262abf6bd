from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class ToolParameter:
    name: str
    description: str
    type: str = "string"


@dataclass(frozen=True)
class ToolSpec:
    """A function the model may call: declaration plus async handler."""
    name: str
    description: str
    handler: ToolHandler
    parameters: List[ToolParameter] = field(default_factory=list)
    required: List[str] = field(default_factory=list)

    def declaration(self) -> Dict[str, Any]:
        """Gemini functionDeclaration for this tool."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": {
                "type": "object",
                "properties": {
                    p.name: {"type": p.type, "description": p.description} for p in self.parameters
                },
                "required": list(self.required),
            },
        }


class ToolRegistry:
    """Name → ToolSpec map. Adding a tool never touches router control flow."""

    def __init__(self, tools: Optional[List[ToolSpec]] = None):
        self._tools: Dict[str, ToolSpec] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolSpec) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def declarations(self) -> Dict[str, Any]:
        """Tool config carrying every declaration, ready for `tools=[...]`."""
        return {"functionDeclarations": [tool.declaration() for tool in self._tools.values()]}

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolSpec]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)
