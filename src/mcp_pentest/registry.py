"""
Capability registration for the MCP pentest server.

This module provides:
- CapabilityRegistry: name -> handler maps for tools, resources and prompts
- Decorators for registering handlers on a registry
- Argument validation against each capability's pydantic model

Tools, resources and prompts are independent namespaces: a tool and a prompt
may share a name. The registry is populated at startup and then frozen; it
is read-only while requests are served, so lookups need no locking.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, ValidationError

from mcp_pentest.errors import InvalidArgumentError, MethodNotFoundError

if TYPE_CHECKING:
    from mcp_pentest.context import ToolContext

ToolHandler = Callable[["ToolContext", Any], Awaitable[dict[str, Any]]]
PromptHandler = Callable[["ToolContext", Any], Awaitable[Any]]
ResourceHandler = Callable[["ToolContext", str, dict[str, str]], Awaitable[Any]]

_TEMPLATE_VARIABLE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


class Arguments(BaseModel):
    """
    Base class for capability argument records.

    Validation is strict (no silent coercion of "5" to 5) and unknown fields
    are ignored.
    """

    model_config = ConfigDict(strict=True, extra="ignore", populate_by_name=True)


class NoArguments(Arguments):
    """Argument record for capabilities that take no arguments."""


def validate_arguments(
    model: type[Arguments], arguments: dict[str, Any] | None, kind: str, name: str
) -> Arguments:
    """
    Validate raw arguments against a capability's argument model.

    Raises:
        InvalidArgumentError: On a missing required field or a type mismatch.
    """
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise InvalidArgumentError(
            f"Invalid arguments for {kind} '{name}': arguments must be an object",
            details={kind: name},
        )
    try:
        return model.model_validate(arguments)
    except ValidationError as e:
        errors = [
            {
                "field": ".".join(str(part) for part in err["loc"]),
                "message": err["msg"],
                "type": err["type"],
            }
            for err in e.errors()
        ]
        summary = "; ".join(f"{err['field']}: {err['message']}" for err in errors)
        raise InvalidArgumentError(
            f"Invalid arguments for {kind} '{name}': {summary}",
            details={kind: name, "errors": errors},
        ) from e


# =============================================================================
# Registrations
# =============================================================================


@dataclass(frozen=True)
class ToolRegistration:
    """
    A registered tool.

    Attributes:
        name: Tool name, unique among tools.
        handler: Async handler receiving the context and validated arguments.
        arguments: Pydantic model used to validate call arguments.
        description: Human-readable description.
        title: Display title.
        timeout: Default execution timeout in seconds; None uses the
            dispatcher default.
        timeout_argument: Name of an argument carrying a per-call timeout in
            milliseconds.
    """

    name: str
    handler: ToolHandler
    arguments: type[Arguments] = NoArguments
    description: str = ""
    title: str | None = None
    timeout: float | None = None
    timeout_argument: str | None = None

    @property
    def input_schema(self) -> dict[str, Any]:
        schema = self.arguments.model_json_schema(by_alias=True)
        schema.pop("title", None)
        schema.setdefault("type", "object")
        schema.setdefault("properties", {})
        return schema

    def validate(self, arguments: dict[str, Any] | None) -> Arguments:
        return validate_arguments(self.arguments, arguments, "tool", self.name)

    def call_timeout(self, validated: Arguments) -> float | None:
        """Per-call timeout in seconds, if the validated arguments carry one."""
        if self.timeout_argument is None:
            return None
        value = getattr(validated, self.timeout_argument, None)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
            return value / 1000.0
        return None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }
        if self.title:
            data["title"] = self.title
        return data


@dataclass(frozen=True)
class PromptRegistration:
    """A registered prompt renderer."""

    name: str
    handler: PromptHandler
    arguments: type[Arguments] = NoArguments
    description: str = ""
    title: str | None = None

    def validate(self, arguments: dict[str, Any] | None) -> Arguments:
        return validate_arguments(self.arguments, arguments, "prompt", self.name)

    def argument_list(self) -> list[dict[str, Any]]:
        return [
            {
                "name": info.alias or field_name,
                "description": info.description or "",
                "required": info.is_required(),
            }
            for field_name, info in self.arguments.model_fields.items()
        ]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "arguments": self.argument_list(),
        }
        if self.title:
            data["title"] = self.title
        return data


@dataclass(frozen=True)
class ResourceRegistration:
    """A registered resource with a fixed URI."""

    uri: str
    name: str
    handler: ResourceHandler
    description: str = ""
    mime_type: str = "text/plain"

    def to_dict(self) -> dict[str, Any]:
        return {
            "uri": self.uri,
            "name": self.name,
            "description": self.description,
            "mimeType": self.mime_type,
        }


@dataclass(frozen=True)
class ResourceTemplateRegistration:
    """
    A registered resource URI template such as ``file://{path}``.

    Each ``{variable}`` matches one or more characters.
    """

    uri_template: str
    name: str
    handler: ResourceHandler
    description: str = ""
    mime_type: str = "text/plain"

    @property
    def pattern(self) -> re.Pattern[str]:
        parts = _TEMPLATE_VARIABLE.split(self.uri_template)
        regex = "".join(
            f"(?P<{part}>.+?)" if index % 2 else re.escape(part)
            for index, part in enumerate(parts)
        )
        return re.compile(f"^{regex}$")

    def match(self, uri: str) -> dict[str, str] | None:
        matched = self.pattern.match(uri)
        return matched.groupdict() if matched else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "uriTemplate": self.uri_template,
            "name": self.name,
            "description": self.description,
            "mimeType": self.mime_type,
        }


# =============================================================================
# Registry
# =============================================================================


class CapabilityRegistry:
    """
    Registry of tools, resources and prompts.

    Example:
        >>> registry = CapabilityRegistry()
        >>> @registry.tool("echo", arguments=EchoArguments)
        ... async def echo(ctx, args):
        ...     return {"content": [{"type": "text", "text": args.text}]}
        >>> registry.freeze()
        >>> [tool["name"] for tool in registry.list_tools()]
        ['echo']
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolRegistration] = {}
        self._prompts: dict[str, PromptRegistration] = {}
        self._resources: dict[str, ResourceRegistration] = {}
        self._templates: dict[str, ResourceTemplateRegistration] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        """Reject any further registration."""
        self._frozen = True

    def _check_writable(self) -> None:
        if self._frozen:
            raise RuntimeError("Capability registry is frozen")

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register_tool(self, registration: ToolRegistration) -> None:
        """
        Register a tool.

        Raises:
            ValueError: If a tool with the same name is already registered.
            RuntimeError: If the registry is frozen.
        """
        self._check_writable()
        if registration.name in self._tools:
            raise ValueError(f"Tool '{registration.name}' is already registered")
        self._tools[registration.name] = registration

    def register_prompt(self, registration: PromptRegistration) -> None:
        self._check_writable()
        if registration.name in self._prompts:
            raise ValueError(f"Prompt '{registration.name}' is already registered")
        self._prompts[registration.name] = registration

    def register_resource(self, registration: ResourceRegistration) -> None:
        self._check_writable()
        if registration.uri in self._resources:
            raise ValueError(f"Resource '{registration.uri}' is already registered")
        self._resources[registration.uri] = registration

    def register_resource_template(self, registration: ResourceTemplateRegistration) -> None:
        self._check_writable()
        if registration.uri_template in self._templates:
            raise ValueError(
                f"Resource template '{registration.uri_template}' is already registered"
            )
        self._templates[registration.uri_template] = registration

    def tool(
        self,
        name: str,
        *,
        arguments: type[Arguments] = NoArguments,
        description: str = "",
        title: str | None = None,
        timeout: float | None = None,
        timeout_argument: str | None = None,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator registering an async function as a tool handler."""

        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register_tool(
                ToolRegistration(
                    name=name,
                    handler=handler,
                    arguments=arguments,
                    description=description,
                    title=title,
                    timeout=timeout,
                    timeout_argument=timeout_argument,
                )
            )
            return handler

        return decorator

    def prompt(
        self,
        name: str,
        *,
        arguments: type[Arguments] = NoArguments,
        description: str = "",
        title: str | None = None,
    ) -> Callable[[PromptHandler], PromptHandler]:
        """Decorator registering an async function as a prompt renderer."""

        def decorator(handler: PromptHandler) -> PromptHandler:
            self.register_prompt(
                PromptRegistration(
                    name=name,
                    handler=handler,
                    arguments=arguments,
                    description=description,
                    title=title,
                )
            )
            return handler

        return decorator

    def resource(
        self,
        uri: str,
        *,
        name: str,
        description: str = "",
        mime_type: str = "text/plain",
    ) -> Callable[[ResourceHandler], ResourceHandler]:
        """
        Decorator registering a resource reader.

        A URI containing ``{variable}`` placeholders registers a template.
        """

        def decorator(handler: ResourceHandler) -> ResourceHandler:
            if _TEMPLATE_VARIABLE.search(uri):
                self.register_resource_template(
                    ResourceTemplateRegistration(
                        uri_template=uri,
                        name=name,
                        handler=handler,
                        description=description,
                        mime_type=mime_type,
                    )
                )
            else:
                self.register_resource(
                    ResourceRegistration(
                        uri=uri,
                        name=name,
                        handler=handler,
                        description=description,
                        mime_type=mime_type,
                    )
                )
            return handler

        return decorator

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get_tool(self, name: str) -> ToolRegistration:
        """
        Raises:
            MethodNotFoundError: If no tool has this name.
        """
        registration = self._tools.get(name)
        if registration is None:
            raise MethodNotFoundError(f"Unknown tool: {name}", details={"tool": name})
        return registration

    def get_prompt(self, name: str) -> PromptRegistration:
        registration = self._prompts.get(name)
        if registration is None:
            raise MethodNotFoundError(f"Unknown prompt: {name}", details={"prompt": name})
        return registration

    def resolve_resource(
        self, uri: str
    ) -> tuple[ResourceRegistration | ResourceTemplateRegistration, dict[str, str]]:
        """
        Find the resource or template serving ``uri``.

        Fixed URIs win over templates; templates are tried in registration order.

        Raises:
            MethodNotFoundError: If nothing serves the URI.
        """
        if uri in self._resources:
            return self._resources[uri], {}
        for template in self._templates.values():
            variables = template.match(uri)
            if variables is not None:
                return template, variables
        raise MethodNotFoundError(f"Unknown resource: {uri}", details={"uri": uri})

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> list[dict[str, Any]]:
        return [registration.to_dict() for registration in self._tools.values()]

    def list_prompts(self) -> list[dict[str, Any]]:
        return [registration.to_dict() for registration in self._prompts.values()]

    def list_resources(self) -> list[dict[str, Any]]:
        return [registration.to_dict() for registration in self._resources.values()]

    def list_resource_templates(self) -> list[dict[str, Any]]:
        return [registration.to_dict() for registration in self._templates.values()]

    def __len__(self) -> int:
        """Total number of registered capabilities across all kinds."""
        return (
            len(self._tools)
            + len(self._prompts)
            + len(self._resources)
            + len(self._templates)
        )
