# backend/zephyr_worker/graph.py
from typing import Any, Dict, Mapping, Optional

# workflow: node id -> {"class_type": str, "inputs": {...}}
Workflow = Dict[str, Dict[str, Any]]

DEFAULT_STAGE = "Processing..."

# Relative execution cost per node type. Anything missing weighs 1.
NODE_WEIGHTS: Dict[str, int] = {
    "UNETLoader": 8,
    "CheckpointLoaderSimple": 8,
    "DualCLIPLoader": 4,
    "VAELoader": 2,
    "ControlNetLoader": 3,
    "LoadTripoSRModel": 6,
    "ImageOnlyCheckpointLoader": 8,
    "CLIPTextEncode": 2,
    "KSampler": 40,
    "KSamplerAdvanced": 40,
    "SamplerCustomAdvanced": 40,
    "SV3D_Conditioning": 3,
    "VAEDecode": 5,
    "RMBG": 5,
    "ImageTo3DMesh": 20,
    "RenderMesh8Directions": 15,
    "ControlNetApplyAdvanced": 2,
    "Canny": 2,
    "SaveImage": 2,
}

# Human-readable stage names for node types
NODE_STAGES: Dict[str, str] = {
    "UNETLoader": "Loading Flux model",
    "CheckpointLoaderSimple": "Loading model",
    "ImageOnlyCheckpointLoader": "Loading SV3D model",
    "DualCLIPLoader": "Loading CLIP",
    "VAELoader": "Loading VAE",
    "CLIPTextEncode": "Encoding prompt",
    "KSampler": "Generating image",
    "KSamplerAdvanced": "Generating image",
    "SamplerCustomAdvanced": "Generating image",
    "SV3D_Conditioning": "Preparing rotations",
    "VAEDecode": "Decoding image",
    "RMBG": "Removing background",
    "LoadTripoSRModel": "Loading TripoSR",
    "ImageTo3DMesh": "Creating 3D mesh",
    "RenderMesh8Directions": "Rendering 8 directions",
    "ControlNetLoader": "Loading ControlNet",
    "ControlNetApplyAdvanced": "Applying ControlNet",
    "Canny": "Detecting edges",
    "SaveImage": "Saving image",
}


def normalize_node_id(node_id) -> str:
    """Composite ids like "74:62" belong to their parent node "74"."""
    return str(node_id).split(":", 1)[0]


class ExecutionGraph:
    """
    Static view of a submitted workflow: node types, per-node weights and
    stage labels. Built once per submission and never mutated.
    """

    def __init__(
        self,
        workflow: Optional[Mapping[str, Mapping[str, Any]]],
        weights: Optional[Mapping[str, int]] = None,
        stages: Optional[Mapping[str, str]] = None,
    ):
        self.weights = dict(NODE_WEIGHTS if weights is None else weights)
        self.stages = dict(NODE_STAGES if stages is None else stages)
        self.node_types: Dict[str, str] = {}
        for node_id, node in (workflow or {}).items():
            class_type = node.get("class_type") if isinstance(node, Mapping) else None
            self.node_types[str(node_id)] = class_type or ""
        self.node_count = len(self.node_types)
        self.total_weight = sum(self.weight_of_type(t) for t in self.node_types.values())

    def type_of(self, node_id) -> str:
        return self.node_types.get(normalize_node_id(node_id), "")

    def weight_of_type(self, class_type: str) -> int:
        return self.weights.get(class_type, 1)

    def weight_of(self, node_id) -> int:
        return self.weight_of_type(self.type_of(node_id))

    def stage_label_of(self, node_id) -> str:
        class_type = self.type_of(node_id)
        return self.stages.get(class_type) or class_type or DEFAULT_STAGE
