"""
Node Capability Registry for AgencyFlow

The set of node kinds is closed. Each kind declares:
- typed input and output ports
- a pydantic config model (defaults + constraints)
- a credit cost computed from the validated config
- an executor

Gate kinds (review, pick) pause the run until someone approves them.

Port types: image, image_batch, video, text, any_media.
Compatibility:
- image -> image, any_media
- video -> video, any_media
- image_batch -> image_batch only (a pick gate narrows a batch to one image)
- text -> text
- any_media -> any_media
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Literal, Optional, Tuple, Type

from pydantic import BaseModel, Field

from . import executors
from .context import RunContext
from .exceptions import RunStateError, WorkflowValidationError


PORT_TYPES = ("image", "image_batch", "video", "text", "any_media")

_COMPATIBLE_TARGETS = {
    "image": ("image", "any_media"),
    "video": ("video", "any_media"),
    "image_batch": ("image_batch",),
    "text": ("text",),
    "any_media": ("any_media",),
}

CATEGORIES = {
    "generation": "Generation",
    "editing": "Editing",
    "ai": "AI",
    "flow_control": "Flow Control",
    "output": "Output",
}

IMAGE_CREDIT_COSTS = {"seedream": 10, "nanoBanana": 8, "qwen": 5}
VIDEO_CREDIT_COSTS = {"kling": 50, "wan": 40, "veo": 60}
BG_REMOVE_CREDIT_COST = 3
CAPTION_CREDIT_COST = 2

ASPECT_RATIOS = Literal["1:1", "4:3", "3:4", "16:9", "9:16", "2:3", "3:2"]


def is_port_compatible(source_type: str, target_type: str) -> bool:
    return target_type in _COMPATIBLE_TARGETS.get(source_type, ())


@dataclass(frozen=True)
class Port:
    name: str
    type: str
    required: bool = False
    label: Optional[str] = None


# ============================================================================
# CONFIG MODELS
# ============================================================================

class NodeConfig(BaseModel):
    """Base config: unknown keys (editor metadata) are ignored."""

    class Config:
        extra = "ignore"


class GenerateImageConfig(NodeConfig):
    model: Literal["seedream", "nanoBanana", "qwen"] = "seedream"
    prompt: str = ""
    negative_prompt: str = ""
    aspect_ratio: ASPECT_RATIOS = "1:1"
    count: int = Field(1, ge=1, le=4)


class GenerateVideoConfig(NodeConfig):
    model: Literal["kling", "wan", "veo"] = "kling"
    prompt: str = ""
    duration: int = Field(5, ge=1, le=10, description="Seconds")
    aspect_ratio: Literal["16:9", "9:16", "1:1"] = "16:9"


class AiCaptionConfig(NodeConfig):
    instruction: str = "Write a caption for this image."
    tone: Literal["professional", "casual", "playful", "flirty", "edgy", "custom"] = "casual"
    max_length: int = Field(280, ge=10, le=2000)


class ReviewConfig(NodeConfig):
    note: str = ""


class SaveToGalleryConfig(NodeConfig):
    tags: List[str] = Field(default_factory=list)


class ExportConfig(NodeConfig):
    platform: Literal["download", "onlyfans", "fansly", "twitter"] = "download"


# ============================================================================
# NODE KINDS
# ============================================================================

class NodeKind(ABC):
    """Common capability of every node kind."""

    kind: str
    label: str
    category: str
    description: str = ""
    input_ports: Tuple[Port, ...] = ()
    output_ports: Tuple[Port, ...] = ()
    config_model: Type[NodeConfig] = NodeConfig
    is_gate: bool = False

    def parse_config(self, raw: Optional[Dict[str, Any]]) -> NodeConfig:
        """Validate a (resolved) config and fill defaults. Raises pydantic.ValidationError."""
        return self.config_model.model_validate(raw or {})

    def input_port(self, name: Optional[str]) -> Optional[Port]:
        return next((port for port in self.input_ports if port.name == name), None)

    def output_port(self, name: Optional[str]) -> Optional[Port]:
        return next((port for port in self.output_ports if port.name == name), None)

    def credit_cost(self, config: NodeConfig) -> int:
        return 0

    @abstractmethod
    async def execute(self, config: NodeConfig, inputs: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
        pass

    def apply_selection(self, output: Optional[Dict[str, Any]], selected_index: Any) -> Dict[str, Any]:
        """Output to store when a paused gate is approved. Only gates are ever approved."""
        return dict(output or {})

    def describe(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "label": self.label,
            "category": self.category,
            "description": self.description,
            "is_gate": self.is_gate,
            "inputs": [asdict(port) for port in self.input_ports],
            "outputs": [asdict(port) for port in self.output_ports],
            "config_schema": self.config_model.model_json_schema(),
        }


class GenerateImageNode(NodeKind):
    kind = "generate_image"
    label = "Generate Image"
    category = "generation"
    description = "Generate images from a prompt, optionally guided by a reference image"
    input_ports = (Port("reference_image", "image", label="Reference Image"),)
    output_ports = (Port("images", "image_batch", label="Images"),)
    config_model = GenerateImageConfig

    def credit_cost(self, config: GenerateImageConfig) -> int:
        return IMAGE_CREDIT_COSTS.get(config.model, 10) * config.count

    async def execute(self, config, inputs, ctx):
        return await executors.execute_generate_image(config, inputs, ctx)


class GenerateVideoNode(NodeKind):
    kind = "generate_video"
    label = "Generate Video"
    category = "generation"
    description = "Generate a video from a prompt, optionally starting from an image"
    input_ports = (Port("start_image", "image", label="Start Image"),)
    output_ports = (Port("video", "video", label="Video"),)
    config_model = GenerateVideoConfig

    def credit_cost(self, config: GenerateVideoConfig) -> int:
        return VIDEO_CREDIT_COSTS.get(config.model, 50)

    async def execute(self, config, inputs, ctx):
        return await executors.execute_generate_video(config, inputs, ctx)


class BackgroundRemoveNode(NodeKind):
    kind = "edit_bg_remove"
    label = "Remove Background"
    category = "editing"
    description = "Remove the background from an image"
    input_ports = (Port("image", "image", required=True, label="Image"),)
    output_ports = (Port("image", "image", label="Image"),)

    def credit_cost(self, config: NodeConfig) -> int:
        return BG_REMOVE_CREDIT_COST

    async def execute(self, config, inputs, ctx):
        return await executors.execute_bg_remove(config, inputs, ctx)


class AiCaptionNode(NodeKind):
    kind = "ai_caption"
    label = "AI Caption"
    category = "ai"
    description = "Write a caption for an image or video"
    input_ports = (Port("media", "any_media", required=True, label="Media"),)
    output_ports = (
        Port("text", "text", label="Caption"),
        Port("media", "any_media", label="Media"),
    )
    config_model = AiCaptionConfig

    def credit_cost(self, config: AiCaptionConfig) -> int:
        return CAPTION_CREDIT_COST

    async def execute(self, config, inputs, ctx):
        return await executors.execute_ai_caption(config, inputs, ctx)


class ReviewNode(NodeKind):
    kind = "review"
    label = "Review"
    category = "flow_control"
    description = "Pause the run until someone approves the media and caption"
    input_ports = (
        Port("media", "any_media", label="Media"),
        Port("text", "text", label="Text"),
    )
    output_ports = (
        Port("media", "any_media", label="Media"),
        Port("text", "text", label="Text"),
    )
    config_model = ReviewConfig
    is_gate = True

    async def execute(self, config, inputs, ctx):
        return await executors.execute_review(config, inputs, ctx)


def _as_index(value: Any) -> int:
    """Accept integers and integral numbers or numeric strings ("1", 1.0)."""
    # bool is an int subclass
    if isinstance(value, bool):
        raise RunStateError("selected_index must be an integer")
    if isinstance(value, int):
        return value
    try:
        number = float(value.strip() if isinstance(value, str) else value)
    except (TypeError, ValueError):
        raise RunStateError("selected_index must be an integer")
    if not number.is_integer():
        raise RunStateError("selected_index must be an integer")
    return int(number)


class PickNode(NodeKind):
    kind = "pick"
    label = "Pick Image"
    category = "flow_control"
    description = "Pause the run until someone picks one image of a batch"
    input_ports = (Port("images", "image_batch", required=True, label="Images"),)
    output_ports = (Port("image", "image", label="Selected Image"),)
    is_gate = True

    async def execute(self, config, inputs, ctx):
        return await executors.execute_pick(config, inputs, ctx)

    def apply_selection(self, output, selected_index):
        if selected_index is None:
            return dict(output or {})

        images = (output or {}).get("images") or []
        selected_index = _as_index(selected_index)
        if selected_index < 0 or selected_index >= len(images):
            raise RunStateError(
                f"selected_index {selected_index} out of range (0-{len(images) - 1})"
            )
        return {"image": images[selected_index]}


class SaveToGalleryNode(NodeKind):
    kind = "save_to_gallery"
    label = "Save to Gallery"
    category = "output"
    description = "Save media to the agency gallery"
    input_ports = (
        Port("media", "any_media", required=True, label="Media"),
        Port("caption", "text", label="Caption"),
    )
    output_ports = (Port("media", "any_media", label="Media"),)
    config_model = SaveToGalleryConfig

    async def execute(self, config, inputs, ctx):
        return await executors.execute_save_to_gallery(config, inputs, ctx)


class ExportNode(NodeKind):
    kind = "export"
    label = "Export"
    category = "output"
    description = "Export media to a platform"
    input_ports = (
        Port("media", "any_media", label="Media"),
        Port("caption", "text", label="Caption"),
    )
    config_model = ExportConfig

    async def execute(self, config, inputs, ctx):
        return await executors.execute_export(config, inputs, ctx)


NODE_KINDS: Dict[str, NodeKind] = {
    node.kind: node
    for node in (
        GenerateImageNode(),
        GenerateVideoNode(),
        BackgroundRemoveNode(),
        AiCaptionNode(),
        ReviewNode(),
        PickNode(),
        SaveToGalleryNode(),
        ExportNode(),
    )
}

GATE_KINDS = tuple(kind for kind, node in NODE_KINDS.items() if node.is_gate)


def get_node_kind(kind: Optional[str]) -> NodeKind:
    node = NODE_KINDS.get(kind or "")
    if node is None:
        raise WorkflowValidationError(f"Unknown node type: {kind}")
    return node


def calculate_node_credit_cost(kind: str, raw_config: Optional[Dict[str, Any]]) -> int:
    """Credits charged when a node of this kind succeeds with this (resolved) config."""
    node = get_node_kind(kind)
    return node.credit_cost(node.parse_config(raw_config))


def node_catalog() -> Dict[str, Any]:
    """Node kinds grouped by category, for the workflow editor."""
    categories = {
        key: {"label": label, "nodes": []} for key, label in CATEGORIES.items()
    }
    for node in NODE_KINDS.values():
        categories[node.category]["nodes"].append(node.describe())
    return {"categories": categories, "port_compatibility": {k: list(v) for k, v in _COMPATIBLE_TARGETS.items()}}
