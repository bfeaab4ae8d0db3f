"""
Shared types for the gateway.

Server configuration records, session history entries, action requests and
results, and the raw application context posted by clients.
"""

from __future__ import annotations

import time
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from toolgate.agent.parameters import ActionParameter


# ==================== Server configuration ====================


class StdioServerConfig(BaseModel):
    """A tool server spawned locally and spoken to over stdin/stdout."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    id: str = Field(..., min_length=1)
    name: str = ""
    transport: Literal["stdio"] = "stdio"
    command: str = Field(..., min_length=1)
    args: List[str] = Field(default_factory=list)
    working_directory: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("working_directory", "workingDirectory"),
    )
    env: Dict[str, str] = Field(default_factory=dict)
    adapter: Optional[Literal["filesystem"]] = None
    enabled: bool = True


class RemoteServerConfig(BaseModel):
    """A tool server reached over a persistent MCP streaming connection."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(..., min_length=1)
    name: str = ""
    transport: Literal["remote"] = "remote"
    url: str = Field(..., min_length=1)
    protocol: Literal["sse", "streamable-http"] = "sse"
    headers: Dict[str, str] = Field(default_factory=dict)
    enabled: bool = True


ServerConfig = Annotated[Union[StdioServerConfig, RemoteServerConfig], Field(discriminator="transport")]

server_config_adapter: TypeAdapter[ServerConfig] = TypeAdapter(ServerConfig)


def parse_server_config(data: Dict[str, Any]) -> ServerConfig:
    payload = dict(data)
    payload.setdefault("transport", "remote" if "url" in payload else "stdio")
    return server_config_adapter.validate_python(payload)


# ==================== Sessions ====================


class HistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["context_update", "action_execution"]
    timestamp: float = Field(default_factory=time.time)
    data: Dict[str, Any] = Field(default_factory=dict)


# ==================== Actions ====================


class CandidateAction(BaseModel):
    name: str
    description: str
    category: Literal["cad", "cam", "gcode", "general"] = "general"
    parameters: List[ActionParameter] = Field(default_factory=list)
    examples: Dict[str, Any] = Field(default_factory=dict)
    contextual_hints: List[str] = Field(default_factory=list)
    applicable_element_types: List[str] = Field(default_factory=list)


class SessionRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("session_id", "sessionId"))


class AvailableActionsRequest(BaseModel):
    session_id: str = Field(..., min_length=1, validation_alias=AliasChoices("session_id", "sessionId"))


class ActionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("session_id", "sessionId"),
    )
    action: str = Field(..., min_length=1)
    parameters: Dict[str, Any] = Field(default_factory=dict)


class Artifact(BaseModel):
    type: str
    data: Any = None


class ActionResult(BaseModel):
    success: bool
    message: str
    updated_context: Optional[Dict[str, Any]] = None
    artifacts: List[Artifact] = Field(default_factory=list)


# ==================== Application context ====================


class SelectedElement(BaseModel):
    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    properties: Dict[str, Any] = Field(default_factory=dict)


class ActiveTool(BaseModel):
    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class CurrentProject(BaseModel):
    name: str
    path: Optional[str] = None
    file_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("file_type", "fileType"))


class RecentOperation(BaseModel):
    type: str
    timestamp: float
    parameters: Dict[str, Any] = Field(default_factory=dict)


class RawApplicationContext(BaseModel):
    """Context snapshot posted by the client application."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("session_id", "sessionId"))
    mode: Literal["cad", "cam", "gcode", "toolpath", "analysis"]
    active_view: Literal["2d", "3d", "split", "code"] = Field(
        ..., validation_alias=AliasChoices("active_view", "activeView")
    )
    selected_elements: List[SelectedElement] = Field(
        default_factory=list,
        validation_alias=AliasChoices("selected_elements", "selectedElements"),
    )
    active_tool: Optional[ActiveTool] = Field(default=None, validation_alias=AliasChoices("active_tool", "activeTool"))
    current_project: Optional[CurrentProject] = Field(
        default=None, validation_alias=AliasChoices("current_project", "currentProject")
    )
    view_state: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("view_state", "viewState"))
    recent_operations: List[RecentOperation] = Field(
        default_factory=list,
        validation_alias=AliasChoices("recent_operations", "recentOperations"),
    )


# ==================== Gateway requests ====================


class DispatchRequest(BaseModel):
    """Either a resource read or a tool call against one server."""

    model_config = ConfigDict(extra="forbid")

    resource: Optional[str] = None
    tool: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    timeout_ms: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _exactly_one_target(self) -> "DispatchRequest":
        if bool(self.resource) == bool(self.tool):
            raise ValueError("Provide exactly one of 'resource' or 'tool'")
        return self
