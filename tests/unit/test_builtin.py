"""Tests for the built-in action handlers."""

from typing import Any, Dict, List, Optional

import pytest

from src.ignition.context import ExecutionContext
from src.ignition.models import AuditLogEntry, InstallationRecord, SkillManifest
from src.ignition.store import InMemoryStore
from src.skills.builtin import (
    ConfigSetHandler,
    LogHandler,
    McpCallHandler,
    SetVariableHandler,
    WaitHandler,
    default_registry,
)
from src.skills.mcp import MCPServerConfig, MCPServerRegistry, MCPTool


class FakeMcpClient:
    """Records tool calls and returns canned data."""

    def __init__(self, response: Any = None) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.response = response if response is not None else {"id": "c-1"}

    async def call_tool(
        self,
        server: MCPServerConfig,
        tool: str,
        params: Dict[str, Any],
        credential: Optional[str],
    ) -> Any:
        self.calls.append(
            {"server": server.id, "tool": tool, "params": params, "credential": credential}
        )
        return self.response


MANIFEST = SkillManifest(name="Test", slug="test", version="1.0.0")


def _context(environment=None, config=None) -> ExecutionContext:
    return ExecutionContext(
        "inst-1",
        "user-1",
        "test",
        MANIFEST,
        config=config,
        environment=environment,
        permissions=["*"],
    )


class TestMcpCallHandler:
    """Tests for McpCallHandler."""

    def test_required_permission_uses_server_id(self):
        """Test that the capability names the catalog id."""
        handler = McpCallHandler()

        assert (
            handler.required_permission({"server": "gohighlevel", "tool": "create_contact"})
            == "mcp:ghl:create_contact"
        )
        assert (
            handler.required_permission({"server": "ghl", "tool": "create_contact"})
            == "mcp:ghl:create_contact"
        )
        assert (
            handler.required_permission({"server": "stripe", "tool": "create_customer"})
            == "mcp:stripe:create_customer"
        )

    def test_required_permission_unknown_server(self):
        """Test that unknown servers still get a specific capability."""
        assert McpCallHandler().required_permission({"server": "acme", "tool": "x"}) == "mcp:acme:x"

    def test_required_permission_incomplete_params(self):
        """Test the fallback capability when server or tool is missing."""
        assert McpCallHandler().required_permission({"server": "ghl"}) == "mcp:call"
        assert McpCallHandler().required_permission({}) == "mcp:call"

    @pytest.mark.asyncio
    async def test_call_success(self):
        """Test a successful tool call."""
        client = FakeMcpClient({"id": "c-42"})
        handler = McpCallHandler(client=client)
        context = _context(environment={"GHL_LOCATION_PIT": "pit-123"})

        result, _ = await handler.run(
            {"server": "gohighlevel", "tool": "create_contact", "params": {"email": "a@b.co"}},
            context,
        )

        assert result.success is True
        assert result.data == {"id": "c-42"}
        assert result.target == "mcp:ghl:create_contact"
        assert result.metadata == {"server": "ghl", "tool": "create_contact"}
        assert client.calls == [
            {
                "server": "ghl",
                "tool": "create_contact",
                "params": {"email": "a@b.co"},
                "credential": "pit-123",
            }
        ]

    @pytest.mark.asyncio
    async def test_missing_credential(self):
        """Test that a missing credential fails before calling out."""
        client = FakeMcpClient()
        result, _ = await McpCallHandler(client=client).run(
            {"server": "ghl", "tool": "get_contacts"}, _context()
        )

        assert result.success is False
        assert "GHL_LOCATION_PIT" in result.error
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_unknown_server(self):
        """Test calling a server not in the catalog."""
        result, _ = await McpCallHandler(client=FakeMcpClient()).run(
            {"server": "acme", "tool": "x"}, _context()
        )
        assert result.success is False
        assert "Unknown MCP server 'acme'" in result.error

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        """Test calling a tool the server does not have."""
        result, _ = await McpCallHandler(client=FakeMcpClient()).run(
            {"server": "ghl", "tool": "launch_rocket"}, _context()
        )
        assert result.success is False
        assert "has no tool 'launch_rocket'" in result.error

    @pytest.mark.asyncio
    async def test_missing_tool_params(self):
        """Test that required tool params are checked."""
        client = FakeMcpClient()
        result, _ = await McpCallHandler(client=client).run(
            {"server": "ghl", "tool": "add_to_workflow", "params": {"contactId": "c-1"}},
            _context(environment={"GHL_LOCATION_PIT": "pit"}),
        )

        assert result.success is False
        assert "workflowId" in result.error
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_disabled_server(self):
        """Test that disabled servers refuse calls."""
        servers = MCPServerRegistry(
            [
                MCPServerConfig(
                    id="off",
                    slug="off",
                    name="Off",
                    endpoint="https://off.example.com",
                    is_enabled=False,
                    tools=[MCPTool(name="ping", requires_auth=False)],
                )
            ]
        )
        result, _ = await McpCallHandler(servers, FakeMcpClient()).run(
            {"server": "off", "tool": "ping"}, _context()
        )
        assert result.success is False
        assert "disabled" in result.error

    @pytest.mark.asyncio
    async def test_no_client(self):
        """Test that a handler without transport fails cleanly."""
        result, _ = await McpCallHandler().run(
            {"server": "ghl", "tool": "get_contacts"},
            _context(environment={"GHL_LOCATION_PIT": "pit"}),
        )
        assert result.success is False
        assert result.error == "No MCP client configured"

    @pytest.mark.asyncio
    async def test_invalid_params(self):
        """Test that malformed params fail validation."""
        result, _ = await McpCallHandler(client=FakeMcpClient()).run(
            {"server": "ghl"}, _context()
        )
        assert result.success is False
        assert "InvalidParamsError" in result.error


class TestSimpleHandlers:
    """Tests for variable:set, log and wait."""

    @pytest.mark.asyncio
    async def test_set_variable(self):
        """Test producing a value."""
        result, _ = await SetVariableHandler().run({"value": {"a": 1}}, _context())
        assert result.data == {"a": 1}

    @pytest.mark.asyncio
    async def test_log(self):
        """Test logging a message."""
        result, _ = await LogHandler().run({"message": "hello", "level": "warning"}, _context())
        assert result.success is True
        assert result.data == {"message": "hello"}

    @pytest.mark.asyncio
    async def test_log_rejects_unknown_level(self):
        """Test that only known levels are accepted."""
        result, _ = await LogHandler().run({"message": "x", "level": "loud"}, _context())
        assert result.success is False

    @pytest.mark.asyncio
    async def test_wait(self):
        """Test a zero-length wait."""
        result, _ = await WaitHandler().run({"ms": 0}, _context())
        assert result.data == {"waited": 0}

    @pytest.mark.asyncio
    async def test_wait_requires_ms(self):
        """Test that wait needs a duration."""
        result, _ = await WaitHandler().run({}, _context())
        assert result.success is False


class TestConfigSetHandler:
    """Tests for the reversible config:set handler."""

    async def _store(self) -> InMemoryStore:
        store = InMemoryStore()
        await store.save_installation(
            InstallationRecord(
                id="inst-1",
                user_id="user-1",
                skill_id="test",
                config={"region": "eu", "tier": "free"},
                manifest=MANIFEST,
            )
        )
        return store

    @pytest.mark.asyncio
    async def test_sets_config_and_records_before_state(self):
        """Test that only previously existing keys land in before_state."""
        store = await self._store()
        context = _context(config={"region": "eu", "tier": "free"})
        result, _ = await ConfigSetHandler(store).run(
            {"values": {"tier": "pro", "seats": 5}}, context
        )

        assert result.success is True
        assert result.reversible is True
        assert result.target == "installation:inst-1:config"
        assert result.before_state == {"tier": "free"}
        assert result.after_state == {"tier": "pro", "seats": 5}
        assert context.config == {"region": "eu", "tier": "pro", "seats": 5}

        installation = await store.get_installation("inst-1")
        assert installation.config == {"region": "eu", "tier": "pro", "seats": 5}

    @pytest.mark.asyncio
    async def test_revert_restores_config(self):
        """Test that reverting restores old values and drops added keys."""
        store = await self._store()
        context = _context(config={"region": "eu", "tier": "free"})
        handler = ConfigSetHandler(store)
        result, _ = await handler.run({"values": {"tier": "pro", "seats": 5}}, context)

        entry = AuditLogEntry(
            id="log-1",
            installation_id="inst-1",
            action="config:set",
            target=result.target,
            before_state=result.before_state,
            after_state=result.after_state,
            reversible=True,
        )
        reverted = await handler.revert(entry, context)

        assert reverted.success is True
        assert context.config == {"region": "eu", "tier": "free"}
        installation = await store.get_installation("inst-1")
        assert installation.config == {"region": "eu", "tier": "free"}

    @pytest.mark.asyncio
    async def test_revert_missing_installation(self):
        """Test reverting against an unknown installation."""
        entry = AuditLogEntry(
            id="log-1", installation_id="gone", action="config:set", target="t", reversible=True
        )
        result = await ConfigSetHandler(InMemoryStore()).revert(entry, None)

        assert result.success is False
        assert "gone" in result.error

    @pytest.mark.asyncio
    async def test_requires_values(self):
        """Test that an empty update is rejected."""
        store = await self._store()
        result, _ = await ConfigSetHandler(store).run({"values": {}}, _context())
        assert result.success is False

    def test_permission(self):
        """Test that config:set needs config:write."""
        assert ConfigSetHandler().required_permission({"values": {"a": 1}}) == "config:write"


class TestDefaultRegistry:
    """Tests for default_registry."""

    def test_contains_builtins(self):
        """Test that every built-in type is registered."""
        registry = default_registry()
        assert set(registry.list_types()) == {
            "mcp:call",
            "variable:set",
            "log",
            "wait",
            "config:set",
        }

    def test_wires_dependencies(self):
        """Test that the store and MCP client reach the handlers."""
        store = InMemoryStore()
        client = FakeMcpClient()
        registry = default_registry(store=store, mcp_client=client)

        assert registry.get("config:set").store is store
        assert registry.get("mcp:call").client is client
