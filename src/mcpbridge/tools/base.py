"""
Base Tool - Abstract base class for all tools.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

ParameterType = Literal["string", "number", "boolean", "array"]


@dataclass
class ToolResult:
    """Result from tool execution."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    execution_time_ms: float = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "execution_time_ms": self.execution_time_ms,
            "metadata": self.metadata,
        }


class ToolParameter(BaseModel):
    name: str
    type: ParameterType = "string"
    description: str = ""
    required: bool = False
    default: Any = None


class ToolDefinition(BaseModel):
    """Tool definition for registration."""

    name: str
    description: str
    parameters: List[ToolParameter] = Field(default_factory=list)
    input_schema: Optional[Dict[str, Any]] = None  # original JSON Schema, when known
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def required_parameters(self) -> List[str]:
        return [p.name for p in self.parameters if p.required]


class BaseTool(ABC):
    """
    Abstract base class for tools.

    All tools must implement:
    - definition: Tool metadata
    - execute: Core execution logic
    """

    @property
    @abstractmethod
    def definition(self) -> ToolDefinition:
        """Get tool definition."""
        pass

    @property
    def name(self) -> str:
        return self.definition.name

    @abstractmethod
    async def execute(self, **kwargs) -> ToolResult:
        """
        Execute the tool.

        Args:
            **kwargs: Tool-specific parameters

        Returns:
            ToolResult with execution outcome
        """
        pass

    def validate_params(self, params: Dict[str, Any]) -> Optional[str]:
        """
        Validate input parameters.

        Returns:
            Error message if invalid, None if valid
        """
        for param in self.definition.required_parameters:
            if param not in params:
                return f"Missing required parameter: {param}"
        return None

    async def safe_execute(self, **kwargs) -> ToolResult:
        """Execute with validation and error handling."""
        start_time = time.time()

        error = self.validate_params(kwargs)
        if error:
            return ToolResult(
                success=False,
                error=error,
                execution_time_ms=(time.time() - start_time) * 1000,
            )

        try:
            result = await self.execute(**kwargs)
            result.execution_time_ms = (time.time() - start_time) * 1000
            return result
        except Exception as e:
            return ToolResult(
                success=False,
                error=str(e),
                execution_time_ms=(time.time() - start_time) * 1000,
            )
