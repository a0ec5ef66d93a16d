from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


@dataclass(frozen=True)
class LayerOptions:
    detect_shared_borders: bool = False
    no_simplification_shared_nodes: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "LayerOptions":
        # Unknown keys are ignored so older pipelines accept newer configs
        data = data or {}
        return cls(
            detect_shared_borders=bool(data.get("detect_shared_borders", False)),
            no_simplification_shared_nodes=bool(
                data.get("no_simplification_shared_nodes", False)
            ),
        )


@dataclass(frozen=True)
class LayerSpec:
    name: str
    zoom_min: int
    zoom_max: int
    dissolve_fields: Tuple[str, ...] = ()
    options: LayerOptions = field(default_factory=LayerOptions)
    raw_options: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def needs_dissolve(self) -> bool:
        return bool(self.dissolve_fields)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "zoom_levels": {"min": self.zoom_min, "max": self.zoom_max},
            "dissolve_fields": list(self.dissolve_fields),
            "options": dict(self.raw_options),
        }


@dataclass(frozen=True)
class AttributeRenameRule:
    old_name: str
    new_name: str


@dataclass(frozen=True)
class RunContext:
    """Values fixed at the start of a run and shared by every stage."""

    timestamp: str
    is_production: bool = False

    @classmethod
    def create(cls, is_production: bool = False, now: Optional[datetime] = None) -> "RunContext":
        now = now or datetime.now()
        return cls(timestamp=now.strftime(TIMESTAMP_FORMAT), is_production=is_production)

    @property
    def build_label(self) -> str:
        return "Production Build" if self.is_production else "Test Build"


@dataclass
class TileSizeRow:
    zoom_level: str
    max_size_bytes: int


@dataclass
class RunManifest:
    timestamp: str
    layers: List[LayerSpec] = field(default_factory=list)
    tile_sizes: List[TileSizeRow] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "layers": [layer.to_dict() for layer in self.layers],
        }
