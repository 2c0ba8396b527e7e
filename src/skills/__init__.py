"""Skills - action handlers and the registry that dispatches to them."""

from .base import ActionHandler, ActionResult, FunctionHandler, HandlerTrace
from .builtin import (
    ConfigSetHandler,
    LogHandler,
    McpCallHandler,
    SetVariableHandler,
    WaitHandler,
    default_registry,
)
from .mcp import MCPServerConfig, MCPServerRegistry, MCPTool, McpClient
from .registry import ActionRegistry, DispatchOutcome
from .validation import parse_params, validate_params

__all__ = [
    "ActionHandler",
    "ActionResult",
    "FunctionHandler",
    "HandlerTrace",
    "ActionRegistry",
    "DispatchOutcome",
    "default_registry",
    "McpCallHandler",
    "SetVariableHandler",
    "LogHandler",
    "WaitHandler",
    "ConfigSetHandler",
    "MCPServerRegistry",
    "MCPServerConfig",
    "MCPTool",
    "McpClient",
    "parse_params",
    "validate_params",
]
