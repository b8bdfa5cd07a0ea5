"""Model/tool adapter registry.

Adapters are the boundary to external providers. Each one is a callable
``adapter(model, payload)`` returning an :class:`AdapterResponse`; it may
be a plain function or a coroutine function. Errors are returned as
values, never raised, and carry one of four kinds that the executors map
onto transient or permanent step failures.
"""

import asyncio
import inspect
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from .exceptions import ConfigurationError
from .logging import get_logger

logger = get_logger(__name__)


class AdapterErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"


TRANSIENT_ERROR_KINDS = frozenset({
    AdapterErrorKind.RATE_LIMITED,
    AdapterErrorKind.TIMEOUT,
    AdapterErrorKind.SERVER_ERROR,
})


@dataclass
class AdapterError:
    kind: AdapterErrorKind
    message: str

    @property
    def is_transient(self) -> bool:
        return self.kind in TRANSIENT_ERROR_KINDS


class AdapterResponse(NamedTuple):
    content: Any = None
    usage: Optional[Dict[str, Any]] = None
    error: Optional[AdapterError] = None


@dataclass
class _RegisteredAdapter:
    name: str
    function: Callable
    description: str = ""
    is_async: bool = False
    models: List[str] = field(default_factory=list)


class AdapterRegistry:
    """Registry of provider adapters, addressed by provider name."""

    def __init__(self):
        self._adapters: Dict[str, _RegisteredAdapter] = {}

    def register(self, name: str, function: Callable, description: str = "",
                 models: Optional[List[str]] = None) -> None:
        """Register an adapter callable.

        Args:
            name: Provider name used in step configuration
            function: ``function(model, payload)`` returning an AdapterResponse
            description: Optional description of the adapter
            models: Optional list of model names the adapter serves

        Raises:
            ConfigurationError: If the name is blank, taken, or the function is not callable
        """
        if not name or not name.strip():
            raise ConfigurationError("Adapter name cannot be empty")
        name = name.strip()

        if not callable(function):
            raise ConfigurationError(f"Adapter '{name}' must be callable", config_key=name)
        if name in self._adapters:
            raise ConfigurationError(f"Adapter '{name}' is already registered", config_key=name)

        try:
            params = inspect.signature(function).parameters
            if len(params) < 2:
                logger.warning(f"Adapter '{name}' accepts fewer than two parameters (model, payload)")
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Cannot inspect signature for adapter '{name}': {e}", config_key=name)

        self._adapters[name] = _RegisteredAdapter(
            name=name,
            function=function,
            description=description.strip() if description else "",
            is_async=inspect.iscoroutinefunction(function),
            models=list(models or []),
        )
        logger.info(f"Registered adapter '{name}'")

    def unregister(self, name: str) -> bool:
        removed = self._adapters.pop(name, None)
        if removed:
            logger.info(f"Unregistered adapter '{name}'")
        return removed is not None

    def exists(self, name: str) -> bool:
        return name in self._adapters

    def get(self, name: str) -> Callable:
        """Return the adapter callable.

        Raises:
            ConfigurationError: If no adapter is registered under the name
        """
        try:
            return self._adapters[name].function
        except KeyError:
            raise ConfigurationError(f"Adapter '{name}' is not registered", config_key=name)

    def list_adapters(self) -> Dict[str, str]:
        """Map of adapter names to descriptions."""
        return {name: entry.description for name, entry in self._adapters.items()}

    async def invoke(self, provider: str, model: Optional[str], payload: Dict[str, Any]) -> AdapterResponse:
        """Invoke an adapter; synchronous adapters run in a worker thread."""
        entry = self._adapters.get(provider)
        if entry is None:
            return AdapterResponse(error=AdapterError(
                AdapterErrorKind.CLIENT_ERROR, f"Adapter '{provider}' is not registered"
            ))

        if entry.is_async:
            result = await entry.function(model, payload)
        else:
            result = await asyncio.to_thread(entry.function, model, payload)
        return _coerce_response(result)


def _coerce_response(result: Any) -> AdapterResponse:
    if isinstance(result, AdapterResponse):
        return result
    if isinstance(result, tuple) and len(result) == 3:
        content, usage, error = result
        if isinstance(error, dict):
            error = AdapterError(AdapterErrorKind(error.get("kind", "server_error")), str(error.get("message", "")))
        return AdapterResponse(content, usage, error)
    return AdapterResponse(content=result)


def echo_adapter(model: Optional[str], payload: Dict[str, Any]) -> AdapterResponse:
    """Deterministic adapter for test mode: echoes the prompt or arguments."""
    if "prompt" in payload:
        content = payload["prompt"]
    elif "arguments" in payload:
        content = payload["arguments"]
    else:
        content = payload.get("input")
    size = len(json.dumps(content, default=str))
    return AdapterResponse(
        content=content,
        usage={"model": model, "input_tokens": size, "output_tokens": size},
    )
