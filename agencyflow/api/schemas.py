"""
Pydantic schemas for API request/response validation
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List, Union
from datetime import datetime


# ============================================================================
# WORKFLOW SCHEMAS
# ============================================================================

class WorkflowCreate(BaseModel):
    """Schema for creating a new workflow"""
    agency_id: int = Field(..., description="Owning agency")
    name: str = Field(..., min_length=1, max_length=255, description="Workflow name")
    description: Optional[str] = Field(None, description="Workflow description")
    model_id: Optional[int] = Field(None, description="Target model; omit to create a template")
    created_by: Optional[str] = None


class WorkflowUpdate(BaseModel):
    """Schema for updating workflow metadata (the graph is saved separately)"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[str] = Field(None, description="draft, active, paused or archived")
    model_id: Optional[int] = None


class WorkflowNodeResponse(BaseModel):
    id: int
    node_type: str
    label: Optional[str]
    config: Dict[str, Any]
    position_x: float
    position_y: float

    class Config:
        from_attributes = True


class WorkflowEdgeResponse(BaseModel):
    id: int
    source_node_id: int
    source_port: str
    target_node_id: int
    target_port: str

    class Config:
        from_attributes = True


class WorkflowResponse(BaseModel):
    id: int
    agency_id: int
    model_id: Optional[int]
    source_workflow_id: Optional[int]
    name: str
    description: Optional[str]
    status: str
    is_template: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class WorkflowDetailResponse(WorkflowResponse):
    nodes: List[WorkflowNodeResponse]
    edges: List[WorkflowEdgeResponse]


class WorkflowListResponse(BaseModel):
    workflows: List[WorkflowResponse]
    total: int


# ============================================================================
# GRAPH SCHEMAS
# ============================================================================

class GraphNode(BaseModel):
    """A node as sent by the editor. key is only used to wire edges in this request."""
    key: Union[str, int]
    node_type: str
    label: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    position: Optional[Dict[str, float]] = None


class GraphEdge(BaseModel):
    source: Union[str, int]
    source_port: str
    target: Union[str, int]
    target_port: str


class GraphSave(BaseModel):
    """Full replacement of a workflow graph"""
    nodes: List[GraphNode]
    edges: List[GraphEdge] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "nodes": [
                    {"key": "gen", "node_type": "generate_image",
                     "config": {"model": "qwen", "prompt": "{{model.name}} at the beach", "count": 4}},
                    {"key": "pick", "node_type": "pick"},
                    {"key": "caption", "node_type": "ai_caption", "config": {"tone": "playful"}},
                    {"key": "save", "node_type": "save_to_gallery"}
                ],
                "edges": [
                    {"source": "gen", "source_port": "images", "target": "pick", "target_port": "images"},
                    {"source": "pick", "source_port": "image", "target": "caption", "target_port": "media"},
                    {"source": "caption", "source_port": "media", "target": "save", "target_port": "media"},
                    {"source": "caption", "source_port": "text", "target": "save", "target_port": "caption"}
                ]
            }
        }


class CloneRequest(BaseModel):
    target_model_id: Optional[int] = None
    as_template: bool = False
    created_by: Optional[str] = None


# ============================================================================
# RUN SCHEMAS
# ============================================================================

class RunStartRequest(BaseModel):
    started_by: Optional[str] = None


class ApproveRequest(BaseModel):
    # Validated by the pick gate so a bad value is a 400, not a 422
    selected_index: Optional[Any] = Field(None, description="Index of the image to keep (pick gates)")


class NodeResultResponse(BaseModel):
    node_id: int
    status: str
    output: Optional[Dict[str, Any]]
    error: Optional[str]
    credits_used: int
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class RunResponse(BaseModel):
    id: int
    workflow_id: int
    model_id: Optional[int]
    agency_id: int
    status: str
    credits_used: int
    error: Optional[str]
    failed_node_id: Optional[int]
    started_by: Optional[str]
    trigger_id: Optional[int]
    started_at: datetime
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class RunDetailResponse(RunResponse):
    node_results: List[NodeResultResponse]


class RunListResponse(BaseModel):
    runs: List[RunResponse]
    total: int


# ============================================================================
# TRIGGER SCHEMAS
# ============================================================================

class TriggerCreate(BaseModel):
    trigger_type: str = Field(..., description="scheduled or webhook")
    schedule_config: Optional[Dict[str, Any]] = Field(
        None, description='{"frequency": "daily|weekly|specific_days", "time": "HH:MM", "days": [0-6], "timezone": "UTC"}'
    )
    enabled: bool = True
    max_concurrent_runs: int = 1


class TriggerUpdate(BaseModel):
    schedule_config: Optional[Dict[str, Any]] = None
    enabled: Optional[bool] = None
    max_concurrent_runs: Optional[int] = None


class TriggerResponse(BaseModel):
    id: int
    workflow_id: int
    trigger_type: str
    schedule_config: Optional[Dict[str, Any]]
    webhook_token: Optional[str]
    enabled: bool
    max_concurrent_runs: int
    next_trigger_at: Optional[datetime]
    last_triggered_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class MessageResponse(BaseModel):
    message: str
