"""Base implementation for tools implementing the Tool protocol."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any

from moneyspread.tools.protocol import ToolInputSchema


class StandardTool:
    """
    Common Tool protocol plumbing.

    Subclasses set ``_name``, ``_description`` and ``_input_schema`` and
    implement ``_execute_impl`` as either a plain or a coroutine function.
    """

    _name: str
    _description: str
    _input_schema: ToolInputSchema

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def input_schema(self) -> ToolInputSchema:
        return self._input_schema

    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self._execute_impl)

    def execute(self, **kwargs: Any) -> dict[str, Any]:
        """
        Run the tool from synchronous code.

        Async tools are driven to completion on a fresh event loop, so this
        must not be called from inside a running loop.

        Raises:
            RuntimeError: If an async tool is executed from a running loop
        """
        if not self.is_async():
            return self._execute_impl(**kwargs)
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(self.execute_async(**kwargs))
        raise RuntimeError(
            f"{self.__class__.__name__} is async. Use execute_async() instead."
        )

    async def execute_async(self, **kwargs: Any) -> dict[str, Any]:
        result = self._execute_impl(**kwargs)
        if inspect.iscoroutine(result):
            return await result
        return result

    def _execute_impl(self, **kwargs: Any) -> Any:
        raise NotImplementedError(
            f"{self.__class__.__name__} must implement _execute_impl"
        )
