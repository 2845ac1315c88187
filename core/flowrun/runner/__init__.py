"""Handler registration and discovery."""

from flowrun.runner.handler_registry import (
    FunctionHandler,
    HandlerRegistry,
    TaskHandler,
    handler,
)

__all__ = ["HandlerRegistry", "TaskHandler", "FunctionHandler", "handler"]
