from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class DepthCropConfig:
  top: int = 2
  left: int = 4
  right: int = 4
  bottom: int = 0


@dataclass(frozen=True)
class DepthConfig:
  # If None, derived from the policy path (see ``resolve_depth_model_path``).
  model_file: str | None = None
  enabled: bool = True
  clipping_range: tuple[float, float] = (0.3, 3.0)
  resize_width: int = 87
  resize_height: int = 58
  crop: DepthCropConfig = field(default_factory=DepthCropConfig)
  latency_steps: int = 7
  feature_dim: int = 32


@dataclass(frozen=True)
class PolicyControllerConfig:
  policy_file: str
  control_dt: float = 0.02
  device: str = "cpu"
  # Body whose orientation feeds ``robot_anchor_projected_gravity``.
  anchor_body_name: str = "torso_link"
  high_speed: bool = True
  depth: DepthConfig = field(default_factory=DepthConfig)

  def resolve_depth_model_path(self) -> str | None:
    if not self.depth.enabled:
      return None
    if self.depth.model_file is not None:
      return self.depth.model_file
    if self.policy_file.endswith("_student.onnx"):
      return self.policy_file[: -len("_student.onnx")] + "_depth_backbone.onnx"
    return None
