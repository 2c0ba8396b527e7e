"""Built-in action handlers shipped with the engine."""

import asyncio
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog

from .base import ActionHandler, ActionResult
from .mcp import MCPServerRegistry, McpClient, mcp_capability
from .registry import ActionRegistry
from .validation import (
    ConfigSetParams,
    LogParams,
    McpCallParams,
    SetVariableParams,
    WaitParams,
    validate_params,
)

if TYPE_CHECKING:
    from ..ignition.context import ExecutionContext
    from ..ignition.models import AuditLogEntry
    from ..ignition.store import SkillStore

log = structlog.get_logger()


class McpCallHandler(ActionHandler):
    """
    Call a tool on an MCP server.

    Requires ``mcp:<server>:<tool>``, with the server's catalog id, so
    ``mcp:ghl:*`` covers every GoHighLevel tool.
    """

    type = "mcp:call"
    description = "Call a tool on a registered MCP server"

    def __init__(
        self,
        servers: Optional[MCPServerRegistry] = None,
        client: Optional[McpClient] = None,
    ) -> None:
        self.servers = servers if servers is not None else MCPServerRegistry()
        self.client = client

    def required_permission(self, params: Dict[str, Any]) -> Optional[str]:
        return mcp_capability(params, self.servers)

    @validate_params(McpCallParams)
    async def handle(
        self, params: Dict[str, Any], context: "ExecutionContext"
    ) -> ActionResult:
        server = self.servers.get_server(params["server"])
        if server is None:
            return ActionResult.fail(f"Unknown MCP server '{params['server']}'")
        if not server.is_enabled:
            return ActionResult.fail(f"MCP server '{server.slug}' is disabled")

        tool = server.get_tool(params["tool"])
        if tool is None:
            return ActionResult.fail(
                f"MCP server '{server.slug}' has no tool '{params['tool']}'"
            )

        missing = [p for p in tool.required_params if p not in params["params"]]
        if missing:
            return ActionResult.fail(
                f"Tool '{tool.name}' is missing required param(s): {', '.join(missing)}"
            )

        credential: Optional[str] = None
        if tool.requires_auth and server.credential_key:
            credential = context.environment.get(server.credential_key)
            if not credential:
                return ActionResult.fail(
                    f"Missing credential '{server.credential_key}' for MCP server '{server.slug}'"
                )

        if self.client is None:
            return ActionResult.fail("No MCP client configured")

        log.debug("mcp.call", server=server.id, tool=tool.name)
        data = await self.client.call_tool(server, tool.name, params["params"], credential)

        return ActionResult.ok(
            data,
            target=f"mcp:{server.id}:{tool.name}",
            metadata={"server": server.id, "tool": tool.name},
        )


class SetVariableHandler(ActionHandler):
    """Produce a value; bind it with ``outputTo``."""

    type = "variable:set"
    description = "Produce a value for outputTo"

    @validate_params(SetVariableParams)
    async def handle(
        self, params: Dict[str, Any], context: "ExecutionContext"
    ) -> ActionResult:
        return ActionResult.ok(params["value"])


class LogHandler(ActionHandler):
    type = "log"
    description = "Write a message to the run log"

    @validate_params(LogParams)
    async def handle(
        self, params: Dict[str, Any], context: "ExecutionContext"
    ) -> ActionResult:
        getattr(log, params["level"])(
            "skill.log",
            message=params["message"],
            installation_id=context.installation_id,
        )
        return ActionResult.ok({"message": params["message"]})


class WaitHandler(ActionHandler):
    type = "wait"
    description = "Pause the run for a number of milliseconds"

    @validate_params(WaitParams)
    async def handle(
        self, params: Dict[str, Any], context: "ExecutionContext"
    ) -> ActionResult:
        await asyncio.sleep(params["ms"] / 1000)
        return ActionResult.ok({"waited": params["ms"]})


class ConfigSetHandler(ActionHandler):
    """
    Update keys of the installation config.

    Reversible: ``before_state`` holds the previous values of the keys that
    existed, so reverting restores them and drops keys the action added.
    """

    type = "config:set"
    description = "Update installation config values"
    permission = "config:write"

    def __init__(self, store: Optional["SkillStore"] = None) -> None:
        self.store = store

    @validate_params(ConfigSetParams)
    async def handle(
        self, params: Dict[str, Any], context: "ExecutionContext"
    ) -> ActionResult:
        values: Dict[str, Any] = params["values"]
        before = {k: context.config[k] for k in values if k in context.config}

        if self.store is not None:
            installation = await self.store.get_installation(context.installation_id)
            if installation is not None:
                installation.config = {**installation.config, **values}
                await self.store.save_installation(installation)

        context.config.update(values)

        return ActionResult.ok(
            values,
            reversible=True,
            target=f"installation:{context.installation_id}:config",
            before_state=before,
            after_state=values,
        )

    async def revert(
        self, entry: "AuditLogEntry", context: Optional["ExecutionContext"]
    ) -> ActionResult:
        before: Dict[str, Any] = entry.before_state or {}
        after: Dict[str, Any] = entry.after_state or {}

        def restore(config: Dict[str, Any]) -> Dict[str, Any]:
            restored = {k: v for k, v in config.items() if k not in after}
            restored.update(before)
            return restored

        if self.store is not None:
            installation = await self.store.get_installation(entry.installation_id)
            if installation is None:
                return ActionResult.fail(f"Installation not found: {entry.installation_id}")
            installation.config = restore(installation.config)
            await self.store.save_installation(installation)

        if context is not None:
            restored = restore(context.config)
            context.config.clear()
            context.config.update(restored)

        return ActionResult.ok(before, target=entry.target)


def default_registry(
    store: Optional["SkillStore"] = None,
    mcp_client: Optional[McpClient] = None,
    servers: Optional[MCPServerRegistry] = None,
) -> ActionRegistry:
    """Registry holding every built-in handler."""
    servers = servers if servers is not None else MCPServerRegistry()
    registry = ActionRegistry(servers=servers)
    registry.register(McpCallHandler.type, McpCallHandler(servers=servers, client=mcp_client))
    registry.register(SetVariableHandler.type, SetVariableHandler())
    registry.register(LogHandler.type, LogHandler())
    registry.register(WaitHandler.type, WaitHandler())
    registry.register(ConfigSetHandler.type, ConfigSetHandler(store=store))
    return registry
