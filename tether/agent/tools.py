"""
tether.agent.tools — The tool contract.

A tool has a ``name``, a ``description`` and a ``call(arguments)`` body
that may be sync or async.  Declaring a pydantic ``Arguments`` model gives
the tool a JSON-schema ``parameters`` block for free and makes argument
decoding strict; without one the tool receives the raw decoded dict.

Plain functions become tools with :func:`tool`::

    @tool
    def echo(input: str) -> str:
        \"\"\"Echo the input back.\"\"\"
        return f"Echo: {input}"
"""

from __future__ import annotations

import inspect
import json
from abc import ABC, abstractmethod
from typing import Any, Callable, ClassVar, overload

from pydantic import BaseModel, create_model

from tether.core.models import ToolDefinition


def render_output(value: Any) -> str:
    """Stringify a tool's return value for the transcript."""
    if isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    if value is None:
        return ""
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


class Tool(ABC):
    """Base class for tools registered with a :class:`ToolExecutor`."""

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    Arguments: ClassVar[type[BaseModel] | None] = None

    @property
    def parameters(self) -> dict[str, Any]:
        if self.Arguments is None:
            return {"type": "object", "properties": {}}
        return self.Arguments.model_json_schema()

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(name=self.name, description=self.description, parameters=self.parameters)

    def decode_arguments(self, raw: dict[str, Any]) -> Any:
        """Validate decoded JSON into the tool's argument shape.

        Raises ``pydantic.ValidationError`` when the shape does not match.
        """
        if self.Arguments is None:
            return raw
        return self.Arguments.model_validate(raw)

    @abstractmethod
    def call(self, arguments: Any) -> Any:
        """Run the tool.  May return an awaitable."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"


class FunctionTool(Tool):
    """Wraps a plain (sync or async) function whose parameters are its arguments."""

    def __init__(
        self,
        fn: Callable[..., Any],
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> None:
        self.fn = fn
        self.name = name or fn.__name__  # type: ignore[misc]
        self.description = description or inspect.getdoc(fn) or ""  # type: ignore[misc]
        self.Arguments = _arguments_model(fn, self.name)  # type: ignore[misc]

    def call(self, arguments: Any) -> Any:
        if isinstance(arguments, BaseModel):
            kwargs = {field: getattr(arguments, field) for field in type(arguments).model_fields}
        else:
            kwargs = dict(arguments)
        return self.fn(**kwargs)


def _arguments_model(fn: Callable[..., Any], name: str) -> type[BaseModel]:
    fields: dict[str, Any] = {}
    hints = inspect.get_annotations(fn, eval_str=True)
    for param in inspect.signature(fn).parameters.values():
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        annotation = hints.get(param.name, Any)
        default = ... if param.default is inspect.Parameter.empty else param.default
        fields[param.name] = (annotation, default)
    model_name = "".join(part.capitalize() for part in name.split("_")) + "Arguments"
    return create_model(model_name, **fields)


@overload
def tool(fn: Callable[..., Any]) -> FunctionTool: ...


@overload
def tool(*, name: str | None = None, description: str | None = None) -> Callable[[Callable[..., Any]], FunctionTool]: ...


def tool(fn: Callable[..., Any] | None = None, *, name: str | None = None, description: str | None = None) -> Any:
    """Decorator turning a function into a :class:`FunctionTool`."""
    if fn is not None:
        return FunctionTool(fn, name=name, description=description)

    def wrap(inner: Callable[..., Any]) -> FunctionTool:
        return FunctionTool(inner, name=name, description=description)

    return wrap
