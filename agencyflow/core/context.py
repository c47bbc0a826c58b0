"""
Run context handed to node executors.

Executors never touch the database session directly. They get a snapshot
of the target model and the process-wide services (HTTP client, job router,
request queues, gallery sink).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .services import EngineServices


@dataclass(frozen=True)
class ModelContext:
    """Read-only snapshot of a TargetModel row."""

    id: int
    agency_id: int
    name: str
    slug: Optional[str] = None
    onlyfans_handle: Optional[str] = None
    notes: Optional[str] = None
    lora_config: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, model) -> Optional["ModelContext"]:
        if model is None:
            return None
        return cls(
            id=model.id,
            agency_id=model.agency_id,
            name=model.name,
            slug=model.slug,
            onlyfans_handle=model.onlyfans_handle,
            notes=model.notes,
            lora_config=dict(model.lora_config or {}),
        )

    @property
    def lora_path(self) -> Optional[str]:
        return self.lora_config.get("path")

    @property
    def lora_weight(self) -> float:
        return float(self.lora_config.get("weight", 0.7))

    @property
    def lora_trigger(self) -> Optional[str]:
        return self.lora_config.get("triggerWord")


@dataclass
class RunContext:
    run_id: int
    workflow_id: int
    agency_id: int
    services: "EngineServices"
    target_model: Optional[ModelContext] = None
    node_id: Optional[int] = None

    def for_node(self, node_id: int) -> "RunContext":
        return RunContext(
            run_id=self.run_id,
            workflow_id=self.workflow_id,
            agency_id=self.agency_id,
            services=self.services,
            target_model=self.target_model,
            node_id=node_id,
        )
