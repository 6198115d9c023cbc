"""
MCP models (Pydantic).

On-disk server configuration plus the handshake, discovery and tool-call
payloads. Wire payloads stay plain dicts until they are validated here.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

PROTOCOL_VERSION = "2025-06-18"
JSONRPC_VERSION = "2.0"
DEFAULT_TIMEOUT_MS = 30000


class MCPServerConfig(BaseModel):
    """One tool server, persisted as one file in the config directory."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    command: str
    description: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: int = DEFAULT_TIMEOUT_MS
    enabled: bool = False
    health_check_interval: Optional[int] = Field(default=None, alias="healthCheckInterval")
    auto_restart: bool = Field(default=True, alias="autoRestart")
    max_restart_attempts: int = Field(default=3, alias="maxRestartAttempts")
    permissions: Optional[List[str]] = None

    @field_validator("name")
    @classmethod
    def _validate_name(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("server name cannot be empty")
        return v

    @field_validator("args", mode="before")
    @classmethod
    def _default_args(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("env", mode="before")
    @classmethod
    def _default_env(cls, v: Any) -> Any:
        return {} if v is None else {str(k): str(val) for k, val in dict(v).items()}

    @property
    def timeout_seconds(self) -> float:
        return max(self.timeout, 1) / 1000.0

    def to_file_dict(self) -> Dict[str, Any]:
        """Full object in its on-disk (camelCase) shape."""
        return self.model_dump(by_alias=True, exclude_none=True)


class ClientInfo(BaseModel):
    name: str = "mcpbridge"
    title: Optional[str] = "mcpbridge MCP Client"
    version: str = "0.1.0"


class ServerInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = ""
    title: Optional[str] = None
    version: str = ""


class InitializeResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    protocol_version: str = Field(default="", alias="protocolVersion")
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    server_info: ServerInfo = Field(default_factory=ServerInfo, alias="serverInfo")
    instructions: Optional[str] = None


class ToolSchema(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "object"
    properties: Dict[str, Any] = Field(default_factory=dict)
    required: List[str] = Field(default_factory=list)

    @field_validator("properties", mode="before")
    @classmethod
    def _default_properties(cls, v: Any) -> Any:
        return v if isinstance(v, dict) else {}

    @field_validator("required", mode="before")
    @classmethod
    def _default_required(cls, v: Any) -> Any:
        return [str(x) for x in v] if isinstance(v, list) else []


class MCPTool(BaseModel):
    """Tool descriptor as returned by tools/list."""

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    name: str
    title: Optional[str] = None
    description: Optional[str] = None
    input_schema: ToolSchema = Field(default_factory=ToolSchema, alias="inputSchema")
    output_schema: Optional[ToolSchema] = Field(default=None, alias="outputSchema")


class CallToolResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    content: List[Dict[str, Any]] = Field(default_factory=list)
    is_error: bool = Field(default=False, alias="isError")
    structured_content: Any = Field(default=None, alias="structuredContent")

    @field_validator("is_error", mode="before")
    @classmethod
    def _coerce_is_error(cls, v: Any) -> bool:
        return bool(v)

    def first_text(self) -> Optional[str]:
        for block in self.content:
            text = block.get("text") if isinstance(block, dict) else None
            if isinstance(text, str):
                return text
        return None


HealthStatus = Literal["healthy", "unhealthy", "unknown", "restarting"]


class MCPServerHealth(BaseModel):
    server_name: str
    status: HealthStatus = "unknown"
    last_check: datetime = Field(default_factory=datetime.now)
    last_error: Optional[str] = None
    restart_count: int = 0
    uptime_seconds: float = 0.0


TemplateCategory = Literal["filesystem", "git", "database", "api", "utility", "custom"]


class MCPServerTemplate(BaseModel):
    id: str
    name: str
    description: str
    category: TemplateCategory
    command: str
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    required_env_vars: List[str] = Field(default_factory=list)
    optional_env_vars: List[str] = Field(default_factory=list)
    documentation: str = ""
    permissions: List[str] = Field(default_factory=list)


class ToolParameterDoc(BaseModel):
    name: str
    type: str
    description: str
    required: bool
    default_value: Any = None


class MCPToolDocumentation(BaseModel):
    tool_name: str
    server_name: str
    description: str
    parameters: List[ToolParameterDoc] = Field(default_factory=list)
