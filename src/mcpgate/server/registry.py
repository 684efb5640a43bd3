"""Tool registration and input validation.

A tool is a :class:`ToolDescriptor`: a name, an input schema, a declared
timeout and an opaque handler. Handlers are called as
``handler(arguments, signal, context)`` where ``signal`` is the invocation's
:class:`~mcpgate.shared.cancellation.CancellationSignal`. Handlers must be
cooperative: they are expected to observe the signal and return promptly once
it is set, since the gateway only stops waiting for them.
"""

from __future__ import annotations as _annotations

import functools
import inspect
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, Generic, TypeVar

import jsonschema
from jsonschema.validators import validator_for
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from mcpgate.shared.exceptions import (
    DuplicateTool,
    InvalidDescriptor,
    RegistryFrozen,
    UnknownRoot,
    UnknownTool,
    ValidationFailed,
)
from mcpgate.shared.limits import LimitPolicy
from mcpgate.utilities.logging import get_logger

if TYPE_CHECKING:
    from mcpgate.server.context import ToolContext
    from mcpgate.shared.cancellation import CancellationSignal

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_PAGE_SIZE: Final[int] = 20
MAX_PAGE_SIZE: Final[int] = 100
ROOT_SELECTORS: Final[tuple[str, ...]] = ("root", "project_id")

ToolHandler = Callable[[Any, "CancellationSignal", "ToolContext"], Any]

_PAGINATION_PROPERTIES: Final[dict[str, Any]] = {
    "limit": {
        "type": "integer",
        "minimum": 1,
        "maximum": MAX_PAGE_SIZE,
        "default": DEFAULT_PAGE_SIZE,
        "description": "Maximum number of items to return",
    },
    "cursor": {"type": "string", "description": "Continuation cursor from a previous call"},
}


@dataclass(frozen=True)
class PageRequest:
    """Where a paginated tool should resume and how many items it may return.

    ``position`` is whatever the tool returned as ``Page.next_position`` on the
    previous page (``None`` on the first page). ``offset`` mirrors it when
    that position is a plain item offset.
    """

    offset: int = 0
    limit: int = DEFAULT_PAGE_SIZE
    position: Any = None

    def slice(self, items: Sequence[T]) -> Page[T]:
        """Cut one page out of a complete, stably ordered result list."""
        end = self.offset + self.limit
        return Page(
            items=list(items[self.offset : end]),
            next_position=end if end < len(items) else None,
        )


@dataclass
class Page(Generic[T]):
    """Result of a paginated tool.

    ``next_position`` is any JSON-serializable position the tool understands;
    ``None`` means there are no more items.
    """

    items: list[T]
    next_position: Any = None
    extra: dict[str, Any] = field(default_factory=dict)


class RootAllowlist:
    """Resolves ``root`` / ``project_id`` selectors to server-side locations."""

    def __init__(self, roots: Mapping[str, Path | str] | None = None):
        self._roots = {name: Path(path) for name, path in (roots or {}).items()}

    def __contains__(self, name: object) -> bool:
        return name in self._roots

    def names(self) -> list[str]:
        return sorted(self._roots)

    def resolve(self, selector: str) -> Path:
        try:
            return self._roots[selector]
        except KeyError:
            raise UnknownRoot(f"Unknown root: {selector}", details={"known": self.names()}) from None


class ToolDescriptor(BaseModel):
    """Registration record for one tool. Immutable once created."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(min_length=1, description="Unique name of the tool")
    description: str | None = Field(None, description="Description of what the tool does")
    input_schema: dict[str, Any] = Field(description="JSON schema for the tool input")
    input_model: type[BaseModel] | None = Field(
        None, description="Pydantic model validating the input, if the schema was derived from one"
    )
    timeout_ms: int = Field(gt=0, description="Declared per-call timeout")
    handler: Callable[..., Any] = Field(exclude=True)
    is_async: bool = Field(description="Whether the handler is a coroutine function")
    paginated: bool = Field(False, description="Accepts limit/cursor and returns a Page")
    uses_roots: bool = Field(False, description="Accepts a root or project_id selector")

    @classmethod
    def from_handler(
        cls,
        handler: ToolHandler,
        *,
        name: str | None = None,
        description: str | None = None,
        input_schema: Mapping[str, Any] | type[BaseModel] | None = None,
        timeout_ms: int,
        paginated: bool = False,
        uses_roots: bool = False,
    ) -> ToolDescriptor:
        """Create a descriptor from a handler function."""
        tool_name = name or getattr(handler, "__name__", None)
        if not tool_name or tool_name == "<lambda>":
            raise InvalidDescriptor("You must provide a name for lambda functions")

        input_model: type[BaseModel] | None = None
        if input_schema is None:
            schema: dict[str, Any] = {"type": "object", "properties": {}}
        elif isinstance(input_schema, type) and issubclass(input_schema, BaseModel):
            input_model = input_schema
            schema = input_schema.model_json_schema(by_alias=True)
        else:
            schema = dict(input_schema)

        try:
            validator_for(schema).check_schema(schema)
        except jsonschema.SchemaError as e:
            raise InvalidDescriptor(f"Invalid input schema for tool {tool_name}: {e.message}") from e

        return cls(
            name=tool_name,
            description=description or inspect.getdoc(handler),
            input_schema=schema,
            input_model=input_model,
            timeout_ms=timeout_ms,
            handler=handler,
            is_async=_is_async_callable(handler),
            paginated=paginated,
            uses_roots=uses_roots,
        )

    @property
    def advertised_schema(self) -> dict[str, Any]:
        """Input schema as listed to callers, including the selectors the core handles."""
        schema = dict(self.input_schema)
        extra: dict[str, Any] = {}
        if self.paginated:
            extra.update(_PAGINATION_PROPERTIES)
        if self.uses_roots:
            extra.update({key: {"type": "string", "description": "Allowlisted root"} for key in ROOT_SELECTORS})
        if extra:
            schema["properties"] = {**extra, **schema.get("properties", {})}
        return schema


def _is_async_callable(obj: Any) -> bool:
    while isinstance(obj, functools.partial):
        obj = obj.func

    return inspect.iscoroutinefunction(obj) or (
        callable(obj) and inspect.iscoroutinefunction(getattr(obj, "__call__", None))
    )


def _field_name(path: Iterable[Any]) -> str:
    return ".".join(str(part) for part in path) or "$"


class ToolRegistry:
    """Maps tool names to descriptors.

    Registration happens once at startup; :meth:`freeze` is called when the
    gateway starts serving and makes the registry read-only.
    """

    def __init__(self, limits: LimitPolicy, roots: RootAllowlist | None = None):
        self.limits = limits
        self.roots = roots or RootAllowlist()
        self._tools: dict[str, ToolDescriptor] = {}
        self._frozen = False

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        self._frozen = True

    def register(self, descriptor: ToolDescriptor) -> ToolDescriptor:
        if self._frozen:
            raise RegistryFrozen(f"Cannot register tool {descriptor.name} after the gateway has started")
        if descriptor.name in self._tools:
            raise DuplicateTool(f"Tool already registered: {descriptor.name}")
        if descriptor.timeout_ms > self.limits.settings.max_tool_runtime_ms:
            raise InvalidDescriptor(
                f"Tool {descriptor.name} declares a timeout of {descriptor.timeout_ms} ms, "
                f"above maxToolRuntimeMs ({self.limits.settings.max_tool_runtime_ms} ms)"
            )
        self._tools[descriptor.name] = descriptor
        logger.debug(f"Registered tool {descriptor.name} (timeout {descriptor.timeout_ms} ms)")
        return descriptor

    def resolve(self, name: str) -> ToolDescriptor:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownTool(f"Unknown tool: {name}") from None

    def list_tools(self) -> list[ToolDescriptor]:
        """All tools, in registration order."""
        return list(self._tools.values())

    def split_arguments(
        self, descriptor: ToolDescriptor, payload: Mapping[str, Any]
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Separate the selectors the core handles from the handler's own input."""
        core_keys: tuple[str, ...] = ()
        if descriptor.paginated:
            core_keys += ("limit", "cursor")
        if descriptor.uses_roots:
            core_keys += ROOT_SELECTORS
        core = {key: payload[key] for key in core_keys if key in payload}
        rest = {key: value for key, value in payload.items() if key not in core}
        return rest, core

    def validate_core_arguments(self, descriptor: ToolDescriptor, core: Mapping[str, Any]) -> None:
        schema = {"type": "object", "properties": {}}
        if descriptor.paginated:
            schema["properties"].update(_PAGINATION_PROPERTIES)
        if descriptor.uses_roots:
            schema["properties"].update({key: {"type": "string"} for key in ROOT_SELECTORS})
        self._validate_schema(schema, core)

    def resolve_root(self, core: Mapping[str, Any]) -> Path | None:
        """Resolve the first selector present against the allowlist."""
        for key in ROOT_SELECTORS:
            if core.get(key) is not None:
                return self.roots.resolve(core[key])
        return None

    def validate_input(self, descriptor: ToolDescriptor, payload: Mapping[str, Any]) -> Any:
        """Validate *payload* against the tool's schema.

        Returns the parsed input: the payload itself for JSON schemas, or an
        instance of the tool's input model.

        Raises:
            ValidationFailed: with one entry per offending field.
        """
        if descriptor.input_model is not None:
            try:
                return descriptor.input_model.model_validate(payload)
            except PydanticValidationError as e:
                errors = [{"field": _field_name(err["loc"]), "message": err["msg"]} for err in e.errors()]
                raise ValidationFailed(
                    f"Invalid input for tool {descriptor.name}", errors, caller_input=payload
                ) from None

        self._validate_schema(descriptor.input_schema, payload, tool_name=descriptor.name)
        return dict(payload)

    def _validate_schema(self, schema: Mapping[str, Any], payload: Mapping[str, Any], tool_name: str = "") -> None:
        validator = validator_for(schema)(schema)
        errors = [
            {"field": _field_name(error.absolute_path), "message": error.message}
            for error in sorted(validator.iter_errors(payload), key=lambda err: list(map(str, err.absolute_path)))
        ]
        if errors:
            target = f"tool {tool_name}" if tool_name else "request"
            raise ValidationFailed(f"Invalid input for {target}", errors, caller_input=payload)
