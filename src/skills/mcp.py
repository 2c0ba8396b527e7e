"""MCP server catalog - the external tool servers ``mcp:call`` actions can reach."""

from typing import Any, Dict, List, Literal, Optional, Protocol

import structlog
from pydantic import BaseModel, ConfigDict, Field

log = structlog.get_logger()


class MCPTool(BaseModel):
    """A tool exposed by an MCP server."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict, alias="inputSchema")
    requires_auth: bool = Field(True, alias="requiresAuth")

    @property
    def required_params(self) -> List[str]:
        return list(self.input_schema.get("required", []))


class MCPAuthConfig(BaseModel):
    """How credentials for a server are found and sent."""

    model_config = ConfigDict(populate_by_name=True)

    env_key: Optional[str] = Field(None, alias="envKey")
    header_name: str = Field("Authorization", alias="headerName")
    header_prefix: Optional[str] = Field(None, alias="headerPrefix")


class MCPServerConfig(BaseModel):
    """Configuration of one MCP server."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    slug: str
    name: str
    description: str = ""
    category: str = "Other"
    endpoint: str
    connection_type: Literal["http", "stdio", "sse"] = Field("http", alias="connectionType")
    auth_type: Literal["api_key", "oauth", "token", "pit", "none"] = Field(
        "none", alias="authType"
    )
    auth_config: Optional[MCPAuthConfig] = Field(None, alias="authConfig")
    tools: List[MCPTool] = Field(default_factory=list)
    website: Optional[str] = None
    docs_url: Optional[str] = Field(None, alias="docsUrl")
    is_built_in: bool = Field(False, alias="isBuiltIn")
    is_enabled: bool = Field(True, alias="isEnabled")

    def get_tool(self, name: str) -> Optional[MCPTool]:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    @property
    def credential_key(self) -> Optional[str]:
        if self.auth_type == "none" or self.auth_config is None:
            return None
        return self.auth_config.env_key


class McpClient(Protocol):
    """
    Transport used by ``mcp:call``.

    The wire format is the host's business; the engine only needs something
    that can call a tool and return its result data.
    """

    async def call_tool(
        self,
        server: MCPServerConfig,
        tool: str,
        params: Dict[str, Any],
        credential: Optional[str],
    ) -> Any:
        ...


def _tool(name: str, description: str, required: Optional[List[str]] = None) -> MCPTool:
    schema: Dict[str, Any] = {"type": "object", "properties": {}}
    if required:
        schema["required"] = required
        schema["properties"] = {param: {"type": "string"} for param in required}
    return MCPTool(name=name, description=description, input_schema=schema)


BUILTIN_MCP_SERVERS: List[MCPServerConfig] = [
    MCPServerConfig(
        id="ghl",
        slug="gohighlevel",
        name="GoHighLevel",
        description="Complete CRM - contacts, blogs, workflows, Voice AI, and more",
        category="CRM & Sales",
        endpoint="internal://ghl",
        auth_type="pit",
        auth_config=MCPAuthConfig(env_key="GHL_LOCATION_PIT"),
        tools=[
            _tool("get_contacts", "Get contacts from CRM"),
            _tool("create_contact", "Create a new contact", ["email"]),
            _tool("update_contact", "Update a contact", ["contactId"]),
            _tool("add_tags", "Add tags to contact", ["contactId", "tags"]),
            _tool("send_sms", "Send SMS message", ["contactId", "message"]),
            _tool("send_email", "Send email", ["contactId", "subject", "body"]),
            _tool("create_blog_post", "Create blog post", ["title", "content"]),
            _tool("get_blog_posts", "List blog posts"),
            _tool("get_workflows", "List workflows"),
            _tool("add_to_workflow", "Add contact to workflow", ["contactId", "workflowId"]),
            _tool("get_pipelines", "List pipelines"),
            _tool("create_opportunity", "Create opportunity", ["name", "pipelineId", "stageId"]),
            _tool("get_calendars", "List calendars"),
            _tool("get_location", "Get location info"),
            _tool("get_custom_values", "Get custom values"),
            _tool("get_tags", "Get all tags"),
        ],
        is_built_in=True,
    ),
    MCPServerConfig(
        id="stripe",
        slug="stripe",
        name="Stripe",
        description="Payment processing - customers, products, subscriptions, invoices",
        category="Finance & Payments",
        endpoint="https://api.stripe.com/v1",
        auth_type="api_key",
        auth_config=MCPAuthConfig(env_key="STRIPE_SECRET_KEY", header_prefix="Bearer"),
        tools=[
            _tool("list_customers", "List Stripe customers"),
            _tool("create_customer", "Create customer", ["email"]),
            _tool("create_product", "Create product", ["name"]),
            _tool("create_price", "Create price", ["productId", "amount"]),
            _tool("list_subscriptions", "List subscriptions"),
            _tool("create_invoice", "Create invoice", ["customerId"]),
        ],
        website="https://stripe.com",
        docs_url="https://stripe.com/docs/api",
        is_built_in=True,
    ),
    MCPServerConfig(
        id="slack",
        slug="slack",
        name="Slack",
        description="Team communication - messages, channels, users",
        category="Communication",
        endpoint="https://slack.com/api",
        auth_type="oauth",
        auth_config=MCPAuthConfig(env_key="SLACK_BOT_TOKEN", header_prefix="Bearer"),
        tools=[
            _tool("send_message", "Send message", ["channel", "text"]),
            _tool("list_channels", "List channels"),
            _tool("create_channel", "Create channel", ["name"]),
            _tool("search_messages", "Search messages", ["query"]),
        ],
        website="https://slack.com",
        docs_url="https://api.slack.com/",
        is_built_in=True,
    ),
]


class MCPServerRegistry:
    """
    Catalog of MCP servers keyed by slug.

    Built-in servers are always present and cannot be removed; hosts add
    their own with ``register_server``.
    """

    def __init__(self, servers: Optional[List[MCPServerConfig]] = None) -> None:
        self._servers: Dict[str, MCPServerConfig] = {}
        for server in BUILTIN_MCP_SERVERS:
            self._servers[server.slug] = server
        for server in servers or []:
            self.register_server(server)

    def get_server(self, key: str) -> Optional[MCPServerConfig]:
        """Look a server up by slug, falling back to its id."""
        server = self._servers.get(key)
        if server is not None:
            return server
        for candidate in self._servers.values():
            if candidate.id == key:
                return candidate
        return None

    def get_tool(self, server_key: str, tool_name: str) -> Optional[MCPTool]:
        server = self.get_server(server_key)
        if server is None:
            return None
        return server.get_tool(tool_name)

    def list_servers(self) -> List[MCPServerConfig]:
        return list(self._servers.values())

    def servers_by_category(self, category: str) -> List[MCPServerConfig]:
        return [s for s in self._servers.values() if s.category == category]

    def register_server(self, config: MCPServerConfig) -> None:
        existing = self._servers.get(config.slug)
        if existing is not None and existing.is_built_in:
            raise ValueError(f"Cannot replace built-in server '{config.slug}'")
        self._servers[config.slug] = config.model_copy(update={"is_built_in": False})
        log.info("mcp.server.registered", slug=config.slug, tools=len(config.tools))

    def unregister_server(self, slug: str) -> None:
        server = self._servers.get(slug)
        if server is None:
            return
        if server.is_built_in:
            raise ValueError("Cannot unregister built-in server")
        del self._servers[slug]
        log.info("mcp.server.unregistered", slug=slug)

    def __contains__(self, key: str) -> bool:
        return self.get_server(key) is not None

    def __len__(self) -> int:
        return len(self._servers)


def mcp_capability(params: Dict[str, Any], servers: Optional[MCPServerRegistry] = None) -> str:
    """
    Capability an ``mcp:call`` with these params needs.

    ``mcp:<server id>:<tool>``, where a server given by slug is mapped to its
    catalog id; plain ``mcp:call`` when server or tool is missing.
    """
    server_key = params.get("server")
    tool = params.get("tool")
    if not server_key or not tool:
        return "mcp:call"
    server = servers.get_server(str(server_key)) if servers is not None else None
    server_id = server.id if server is not None else server_key
    return f"mcp:{server_id}:{tool}"
