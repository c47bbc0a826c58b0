"""
Workflow, WorkflowNode and WorkflowEdge Models

A workflow's graph is always replaced as a whole (see Repository.replace_graph),
never patched node by node.
"""

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Float, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from . import Base


WORKFLOW_STATUSES = ("draft", "active", "paused", "archived")


class Workflow(Base):
    """
    Workflow Model

    model_id NULL means the workflow is a template and cannot be run.
    """
    __tablename__ = "workflows"

    id = Column(Integer, primary_key=True, index=True)
    agency_id = Column(Integer, ForeignKey("agencies.id", ondelete="CASCADE"), nullable=False, index=True)
    model_id = Column(Integer, ForeignKey("target_models.id", ondelete="SET NULL"), nullable=True, index=True)
    source_workflow_id = Column(Integer, ForeignKey("workflows.id", ondelete="SET NULL"), nullable=True)

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # draft, active, paused, archived
    status = Column(String(20), nullable=False, default="draft", index=True)

    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    nodes = relationship(
        "WorkflowNode", back_populates="workflow", cascade="all, delete-orphan",
        order_by="WorkflowNode.id"
    )
    edges = relationship(
        "WorkflowEdge", back_populates="workflow", cascade="all, delete-orphan",
        order_by="WorkflowEdge.id"
    )
    target_model = relationship("TargetModel")

    @property
    def is_template(self) -> bool:
        return self.model_id is None

    def __repr__(self):
        return f"<Workflow(id={self.id}, name='{self.name}', status='{self.status}')>"


class WorkflowNode(Base):
    __tablename__ = "workflow_nodes"

    id = Column(Integer, primary_key=True, index=True)
    workflow_id = Column(Integer, ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)

    node_type = Column(String(50), nullable=False)
    label = Column(String(255), nullable=True)
    config = Column(JSON, nullable=False, default=dict)

    # Editor canvas position, not used by the engine
    position_x = Column(Float, nullable=False, default=0)
    position_y = Column(Float, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    workflow = relationship("Workflow", back_populates="nodes")

    def __repr__(self):
        return f"<WorkflowNode(id={self.id}, type='{self.node_type}')>"


class WorkflowEdge(Base):
    __tablename__ = "workflow_edges"
    __table_args__ = (
        # An input port accepts a single connection
        UniqueConstraint("workflow_id", "target_node_id", "target_port", name="uq_edge_target_port"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workflow_id = Column(Integer, ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)

    source_node_id = Column(Integer, ForeignKey("workflow_nodes.id", ondelete="CASCADE"), nullable=False)
    source_port = Column(String(50), nullable=False)
    target_node_id = Column(Integer, ForeignKey("workflow_nodes.id", ondelete="CASCADE"), nullable=False)
    target_port = Column(String(50), nullable=False)

    workflow = relationship("Workflow", back_populates="edges")

    def __repr__(self):
        return (
            f"<WorkflowEdge({self.source_node_id}.{self.source_port} -> "
            f"{self.target_node_id}.{self.target_port})>"
        )
