"""
WorkflowTrigger Model
"""

from sqlalchemy import Column, Integer, String, JSON, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from . import Base


class WorkflowTrigger(Base):
    """
    Starts runs of a workflow automatically.

    schedule_config example:
        {"frequency": "specific_days", "days": [1, 5], "time": "18:00", "timezone": "Europe/Madrid"}

    next_trigger_at is stored as naive UTC and is NULL while the trigger is disabled.
    """
    __tablename__ = "workflow_triggers"

    id = Column(Integer, primary_key=True, index=True)
    workflow_id = Column(Integer, ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)

    # scheduled, webhook
    trigger_type = Column(String(20), nullable=False)
    schedule_config = Column(JSON, nullable=True)
    webhook_token = Column(String(64), nullable=True, unique=True)

    enabled = Column(Boolean, nullable=False, default=True)
    max_concurrent_runs = Column(Integer, nullable=False, default=1)

    next_trigger_at = Column(DateTime, nullable=True, index=True)
    last_triggered_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    workflow = relationship("Workflow")

    def __repr__(self):
        return f"<WorkflowTrigger(id={self.id}, type='{self.trigger_type}', enabled={self.enabled})>"
