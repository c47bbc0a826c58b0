"""
Models module - SQLAlchemy database models
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Import models after Base is defined to avoid circular imports
from .agency import Agency, TargetModel
from .workflow import Workflow, WorkflowNode, WorkflowEdge
from .run import WorkflowRun, NodeResult
from .trigger import WorkflowTrigger
from .gallery import GalleryItem

__all__ = [
    "Base", "Agency", "TargetModel", "Workflow", "WorkflowNode", "WorkflowEdge",
    "WorkflowRun", "NodeResult", "WorkflowTrigger", "GalleryItem",
]
