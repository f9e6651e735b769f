"""Registry of tool functions callable from workflow tool nodes."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

ToolFunc = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


class ToolRegistry:
    """Maps tool names to sync or async callables taking one argument dict."""

    def __init__(self, tools: Optional[Dict[str, ToolFunc]] = None) -> None:
        self._tools: Dict[str, ToolFunc] = dict(tools or {})

    def register(self, name: str, func: Optional[ToolFunc] = None):
        """Register ``func`` under ``name``; usable as a decorator."""

        def decorator(f: ToolFunc) -> ToolFunc:
            self._tools[name] = f
            return f

        if func is not None:
            return decorator(func)
        return decorator

    def get(self, name: str) -> Optional[ToolFunc]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return sorted(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    async def call(self, name: str, arguments: Dict[str, Any]) -> Any:
        func = self._tools.get(name)
        if func is None:
            raise LookupError(f"Tool not registered: {name}")
        result = func(arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


def data_validation(arguments: Dict[str, Any]) -> Dict[str, Any]:
    """Check that required fields are present and, optionally, non-empty.

    Arguments: ``required`` (list of state keys) and ``non_empty`` (bool,
    default ``True``). Raises ``ValueError`` listing every offending field.
    """
    required = arguments.get("required") or []
    non_empty = arguments.get("non_empty", True)
    missing = [key for key in required if key not in arguments]
    empty = [
        key
        for key in required
        if key in arguments and non_empty and arguments[key] in (None, "", [], {})
    ]
    if missing or empty:
        problems = []
        if missing:
            problems.append(f"missing: {', '.join(missing)}")
        if empty:
            problems.append(f"empty: {', '.join(empty)}")
        raise ValueError(f"Validation failed ({'; '.join(problems)})")
    return {"valid": True, "checked": list(required)}


def echo(arguments: Dict[str, Any]) -> Dict[str, Any]:
    return dict(arguments)


def default_registry() -> ToolRegistry:
    """Registry with the built-in tools.

    Data-access tools (SQL query, vector search, document analysis) live
    with their collaborators and are registered by the deployment.
    """
    return ToolRegistry({"data_validation": data_validation, "echo": echo})
