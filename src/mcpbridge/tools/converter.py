"""
Tool Schema Converter - ToolDefinition to JSON Schema, OpenAI and pydantic shapes.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, Field, create_model

from mcpbridge.tools.base import ToolDefinition, ToolParameter

OpenAITool = Dict[str, Any]

_PYTHON_TYPES: Dict[str, Any] = {
    "string": str,
    "number": float,
    "boolean": bool,
    "array": list,
}


def parameters_to_json_schema(parameters: List[ToolParameter]) -> Dict[str, Any]:
    properties: Dict[str, Any] = {}
    for p in parameters:
        prop: Dict[str, Any] = {"type": p.type, "description": p.description}
        if p.default is not None:
            prop["default"] = p.default
        properties[p.name] = prop
    return {
        "type": "object",
        "properties": properties,
        "required": [p.name for p in parameters if p.required],
    }


def definition_schema(definition: ToolDefinition) -> Dict[str, Any]:
    """Prefer the tool's own JSON Schema; fall back to one built from parameters."""
    if definition.input_schema:
        return definition.input_schema
    return parameters_to_json_schema(definition.parameters)


def to_openai_tool(definition: ToolDefinition) -> OpenAITool:
    """Convert to OpenAI Chat Completions tool format."""
    return {
        "type": "function",
        "function": {
            "name": definition.name,
            "description": definition.description,
            "parameters": definition_schema(definition),
        },
    }


def build_args_model(definition: ToolDefinition) -> Optional[Type[BaseModel]]:
    """Pydantic args schema for LangChain's StructuredTool."""
    fields: Dict[str, Any] = {}
    for p in definition.parameters:
        prop_type: Any = _PYTHON_TYPES.get(p.type, str)
        default_val: Any = ...
        if not p.required:
            default_val = p.default
            prop_type = Optional[prop_type]
        fields[p.name] = (prop_type, Field(default=default_val, description=p.description))

    if not fields:
        return None
    return create_model(f"{definition.name}Args", **fields)
