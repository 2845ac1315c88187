"""Handler discovery and registration for the workflow runtime."""

import asyncio
import importlib.util
import inspect
import logging
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from flowrun.errors import ConfigError, HandlerNotFoundError

if TYPE_CHECKING:
    from flowrun.runtime.cancellation import CancelToken

logger = logging.getLogger(__name__)

# Parameter names FunctionHandler fills from the runtime instead of from inputs
RUNTIME_PARAMS = frozenset({"meta", "cancel"})


@runtime_checkable
class TaskHandler(Protocol):
    """
    Contract every node handler implements.

    ``execute`` receives the node's resolved inputs, its ``meta`` bag and the
    run's cancel token, and returns a mapping of output port -> value that
    covers every port the node declares. Failures are reported by raising
    HandlerError(message, retryable=...).

    Handlers may be invoked more than once for the same node (retries), so
    any external side effects must be idempotent.
    """

    async def execute(
        self,
        inputs: dict[str, Any],
        meta: dict[str, Any],
        cancel: "CancelToken",
    ) -> dict[str, Any]: ...


class FunctionHandler:
    """
    Adapts a plain function into a TaskHandler.

    Inputs are passed as keyword arguments by port name. Parameters named
    ``meta`` or ``cancel`` receive the node meta and the cancel token.
    A function taking ``**kwargs`` receives every input.
    Synchronous functions run in a worker thread so they don't block the
    event loop (they cannot be interrupted once started).

    If ``output`` is set, the return value is wrapped as ``{output: value}``;
    otherwise the function must return the output mapping itself.
    """

    def __init__(self, func: Callable[..., Any], output: str | None = None):
        self.func = func
        self.output = output
        self._is_async = inspect.iscoroutinefunction(func)
        sig = inspect.signature(func)
        self._params = {
            name
            for name, p in sig.parameters.items()
            if p.kind in (p.POSITIONAL_OR_KEYWORD, p.KEYWORD_ONLY)
        }
        self._var_kwargs = any(p.kind == p.VAR_KEYWORD for p in sig.parameters.values())

    async def execute(
        self,
        inputs: dict[str, Any],
        meta: dict[str, Any],
        cancel: "CancelToken",
    ) -> dict[str, Any]:
        if self._var_kwargs:
            kwargs = dict(inputs)
        else:
            kwargs = {k: v for k, v in inputs.items() if k in self._params}
        if "meta" in self._params:
            kwargs["meta"] = meta
        if "cancel" in self._params:
            kwargs["cancel"] = cancel

        if self._is_async:
            result = await self.func(**kwargs)
        else:
            result = await asyncio.to_thread(self.func, **kwargs)

        if self.output is not None:
            return {self.output: result}
        return result

    def __repr__(self) -> str:
        return f"FunctionHandler({getattr(self.func, '__name__', self.func)!r})"


class HandlerRegistry:
    """
    Maps node types to handlers.

    Built once by the embedding application and shared by every run.
    Handlers acquire long-lived resources (clients, models, pools) when they
    are constructed; ``close()`` releases them.

    Handler Discovery:
    1. Manually registered handlers and functions
    2. handlers.py modules loaded with discover_from_module()
    """

    def __init__(self):
        self._handlers: dict[str, TaskHandler] = {}
        self._closed = False

    def register(self, type_name: str, handler: TaskHandler) -> None:
        """
        Register a handler for a node type.

        Args:
            type_name: Value of NodeSpec.node_type this handler serves
            handler: Object with an async ``execute(inputs, meta, cancel)``

        Raises:
            ConfigError: if the handler doesn't implement the contract or the
                type is already registered
        """
        if not type_name:
            raise ConfigError("Handler type name must be non-empty")
        execute = getattr(handler, "execute", None)
        if execute is None or not inspect.iscoroutinefunction(execute):
            raise ConfigError(
                f"Handler for '{type_name}' must define 'async def execute(inputs, meta, cancel)'"
            )
        if type_name in self._handlers:
            raise ConfigError(f"Handler type '{type_name}' is already registered")
        self._handlers[type_name] = handler
        logger.debug(f"Registered handler for '{type_name}': {handler!r}")

    def register_function(
        self,
        func: Callable[..., Any],
        type_name: str | None = None,
        output: str | None = None,
    ) -> None:
        """
        Register a function as a handler.

        Args:
            func: Sync or async function; see FunctionHandler
            type_name: Node type (defaults to the function name)
            output: Wrap the return value under this output port
        """
        self.register(type_name or func.__name__, FunctionHandler(func, output=output))

    def resolve(self, type_name: str) -> TaskHandler:
        """Return the handler for a node type or raise HandlerNotFoundError."""
        try:
            return self._handlers[type_name]
        except KeyError:
            raise HandlerNotFoundError(type_name, self.list_types()) from None

    def has(self, type_name: str) -> bool:
        return type_name in self._handlers

    def list_types(self) -> list[str]:
        return sorted(self._handlers)

    def discover_from_module(self, module_path: Path) -> int:
        """
        Load handlers from a Python module file.

        Looks for, in order:
        - ``register(registry)``: called with this registry
        - ``HANDLERS: dict[str, handler-or-function]``
        - functions decorated with ``@handler``

        Args:
            module_path: Path to a handlers.py file

        Returns:
            Number of handler types added
        """
        module_path = Path(module_path)
        if not module_path.exists():
            raise ConfigError(f"Handler module not found: {module_path}")

        spec = importlib.util.spec_from_file_location(
            f"flowrun_handlers_{module_path.stem}", module_path
        )
        if spec is None or spec.loader is None:
            raise ConfigError(f"Cannot load handler module: {module_path}")

        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        before = len(self._handlers)

        register_hook = getattr(module, "register", None)
        if callable(register_hook) and not hasattr(register_hook, "_handler_metadata"):
            register_hook(self)

        handlers = getattr(module, "HANDLERS", None)
        if isinstance(handlers, Mapping):
            for type_name, impl in handlers.items():
                if inspect.isfunction(impl):
                    self.register_function(impl, type_name=type_name)
                else:
                    self.register(type_name, impl)

        for name in dir(module):
            obj = getattr(module, name)
            metadata = getattr(obj, "_handler_metadata", None)
            if callable(obj) and metadata is not None:
                self.register_function(
                    obj,
                    type_name=metadata.get("type_name") or name,
                    output=metadata.get("output"),
                )

        count = len(self._handlers) - before
        logger.info(f"Discovered {count} handlers from {module_path}")
        return count

    async def close(self) -> None:
        """Release handler resources. Calls ``aclose()``/``close()`` where defined."""
        if self._closed:
            return
        self._closed = True
        for type_name, impl in self._handlers.items():
            closer = getattr(impl, "aclose", None) or getattr(impl, "close", None)
            if closer is None:
                continue
            try:
                result = closer()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Error closing handler '{type_name}': {e}")

    def __contains__(self, type_name: str) -> bool:
        return self.has(type_name)

    def __len__(self) -> int:
        return len(self._handlers)


def handler(type_name: str | None = None, output: str | None = None) -> Callable:
    """
    Decorator to mark a function as a handler for discover_from_module().

    Usage:
        @handler("http_fetch", output="body")
        async def fetch(url: str, cancel) -> str:
            ...
    """

    def decorator(func: Callable) -> Callable:
        func._handler_metadata = {"type_name": type_name or func.__name__, "output": output}
        return func

    return decorator
