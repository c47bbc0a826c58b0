"""
WorkflowRun and NodeResult Models

A run is created with one pending NodeResult per node of its workflow.
"""

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from . import Base


RUN_STATUSES = ("running", "waiting_for_review", "completed", "failed", "cancelled")
TERMINAL_RUN_STATUSES = ("completed", "failed", "cancelled")
ACTIVE_RUN_STATUSES = ("running", "waiting_for_review")

NODE_STATUSES = ("pending", "running", "waiting_for_review", "completed", "failed", "skipped")
TERMINAL_NODE_STATUSES = ("completed", "failed", "skipped")


class WorkflowRun(Base):
    __tablename__ = "workflow_runs"

    id = Column(Integer, primary_key=True, index=True)
    workflow_id = Column(Integer, ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    model_id = Column(Integer, ForeignKey("target_models.id", ondelete="SET NULL"), nullable=True)
    agency_id = Column(Integer, ForeignKey("agencies.id", ondelete="CASCADE"), nullable=False, index=True)

    # running, waiting_for_review, completed, failed, cancelled
    status = Column(String(30), nullable=False, default="running", index=True)

    credits_used = Column(Integer, nullable=False, default=0)

    # Set when status == failed
    error = Column(Text, nullable=True)
    failed_node_id = Column(Integer, nullable=True)

    # NULL for runs fired by a trigger
    started_by = Column(String(255), nullable=True)
    trigger_id = Column(Integer, ForeignKey("workflow_triggers.id", ondelete="SET NULL"), nullable=True)

    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    node_results = relationship(
        "NodeResult", back_populates="run", cascade="all, delete-orphan", order_by="NodeResult.id"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def __repr__(self):
        return f"<WorkflowRun(id={self.id}, workflow_id={self.workflow_id}, status='{self.status}')>"


class NodeResult(Base):
    __tablename__ = "node_results"
    __table_args__ = (
        UniqueConstraint("run_id", "node_id", name="uq_node_result_run_node"),
    )

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(Integer, ForeignKey("workflow_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    node_id = Column(Integer, ForeignKey("workflow_nodes.id", ondelete="CASCADE"), nullable=False)

    # pending -> running -> completed | failed | waiting_for_review | skipped
    status = Column(String(30), nullable=False, default="pending")

    # Keyed by output port name, e.g. {"images": ["data:image/png;base64,..."]}
    output = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    credits_used = Column(Integer, nullable=False, default=0)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    run = relationship("WorkflowRun", back_populates="node_results")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_NODE_STATUSES

    def __repr__(self):
        return f"<NodeResult(run_id={self.run_id}, node_id={self.node_id}, status='{self.status}')>"
