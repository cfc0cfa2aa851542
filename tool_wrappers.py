"""Per-tool async functions bound to an explicit Session.

Every wrapper delegates to ``session.invoke(name, arguments)``. The session
is handed in by the caller; nothing here keeps a shared session around.
"""

import keyword
import re
from typing import Any, Iterable

_NON_IDENTIFIER = re.compile(r"\W")


def python_name(tool_name: str) -> str:
    """Turn a tool name into a usable Python identifier."""
    name = _NON_IDENTIFIER.sub("_", tool_name) or "tool"
    if name[0].isdigit() or keyword.iskeyword(name):
        name = f"_{name}"
    return name


def map_arguments(tool_name: str, param_names: tuple[str, ...],
                  args: tuple, kwargs: dict) -> dict[str, Any]:
    """Build the tool's argument object from a Python call.

    A single dict positional is used as the argument object as-is when its
    keys are all known parameters (or the tool declares none). Other
    positionals are matched to ``param_names`` in order.
    """
    if len(args) == 1 and isinstance(args[0], dict) and not kwargs:
        if not param_names or set(args[0]) <= set(param_names):
            return dict(args[0])
    if len(args) > len(param_names):
        raise TypeError(
            f"{tool_name}() takes {len(param_names)} positional argument(s) "
            f"but {len(args)} were given"
        )
    params = dict(zip(param_names, args))
    for key, value in kwargs.items():
        if key in params:
            raise TypeError(f"{tool_name}() got multiple values for argument {key!r}")
        params[key] = value
    return params


def make_tool_function(session, tool_name: str, param_names: Iterable[str] = ()):
    names = tuple(param_names)

    async def call(*args, **kwargs):
        return await session.invoke(tool_name, map_arguments(tool_name, names, args, kwargs))

    call.__name__ = call.__qualname__ = python_name(tool_name)
    call.__doc__ = f"Invoke the {tool_name!r} tool."
    call.tool_name = tool_name
    call.param_names = names
    return call


class ToolTable:
    """Explicit name -> wrapper lookup for one session's tools."""

    def __init__(self, session, tools: Iterable[dict | str]):
        self._session = session
        self._functions = {}
        self._descriptions = {}
        for tool in tools:
            if isinstance(tool, str):
                tool = {"name": tool}
            name = tool.get("name")
            if not isinstance(name, str) or not name:
                continue
            schema = tool.get("inputSchema") or {}
            properties = schema.get("properties") if isinstance(schema, dict) else None
            param_names = list(properties) if isinstance(properties, dict) else []
            self._functions[name] = make_tool_function(session, name, param_names)
            self._descriptions[name] = tool.get("description") or ""

    @classmethod
    async def from_session(cls, session) -> "ToolTable":
        return cls(session, await session.list_tools())

    def names(self) -> list[str]:
        return list(self._functions)

    def describe(self, name: str) -> str:
        if name not in self._descriptions:
            raise KeyError(f"Unknown tool: {name}")
        return self._descriptions[name]

    def __getitem__(self, name: str):
        try:
            return self._functions[name]
        except KeyError:
            raise KeyError(f"Unknown tool: {name}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    def __len__(self) -> int:
        return len(self._functions)

    def __iter__(self):
        return iter(self._functions)

    async def call(self, name: str, *args, **kwargs) -> Any:
        return await self[name](*args, **kwargs)
