"""Tool protocol shared by every frontend that can trigger an operation."""

from __future__ import annotations

from typing import Any, Protocol, TypedDict, runtime_checkable


class ToolParameter(TypedDict, total=False):
    """JSON Schema for a single parameter."""

    type: str
    description: str
    enum: list[str] | None


class ToolInputSchema(TypedDict):
    """JSON Schema for tool input parameters."""

    type: str  # Always "object"
    properties: dict[str, ToolParameter]
    required: list[str]


@runtime_checkable
class Tool(Protocol):
    """
    A named operation with a JSON Schema for its inputs.

    Results are JSON-serializable dicts carrying at least a "status" key.
    """

    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> ToolInputSchema: ...

    def is_async(self) -> bool: ...

    def execute(self, **kwargs: Any) -> dict[str, Any]: ...

    async def execute_async(self, **kwargs: Any) -> dict[str, Any]: ...
