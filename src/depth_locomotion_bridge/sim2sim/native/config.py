from __future__ import annotations

from dataclasses import dataclass

from depth_locomotion_bridge.policy_server.config import PolicyControllerConfig


def box_course_zones(
  first: float = 5.0,
  last: float = 60.0,
  spacing: float = 5.0,
  before: float = 1.5,
  after: float = 1.0,
) -> tuple[tuple[float, float], ...]:
  """Root-x intervals around a row of obstacle boxes where forward is forced."""
  zones: list[tuple[float, float]] = []
  x = first
  while x <= last + 1e-9:
    zones.append((x - before, x + after))
    x += spacing
  return tuple(zones)


@dataclass(frozen=True)
class NativeSim2SimConfig:
  mjcf_file: str
  policy: PolicyControllerConfig
  num_steps: int = 1000
  # Keyframe used on reset; falls back to mj_resetData when missing.
  keyframe: str | None = "home"
  # Write the policy default pose into the bound joints after reset.
  init_default_pose: bool = True
  depth_camera: str = "depth_camera"
  depth_width: int = 106
  depth_height: int = 60
  # Direction keys held for the whole rollout (forward/left/right/turn_left/turn_right).
  command_keys: tuple[str, ...] = ()
  # Root-x intervals in which forward is forced on.
  auto_forward_zones: tuple[tuple[float, float], ...] = ()
  box_course: bool = False
  video: bool = False
  # If None, defaults to:
  #   {policy_dir}/videos/sim2sim/sim2sim_{policy_stem}.mp4
  video_file: str | None = None
  video_height: int = 480
  video_width: int = 640
  video_fps: int | None = None
  camera: int | str | None = None
  # Ornstein-Uhlenbeck perturbation added to data.ctrl every substep (0 disables).
  ctrl_noise_std: float = 0.0
  # Noise correlation time in seconds; 0 gives white noise.
  ctrl_noise_rate: float = 0.0
  ctrl_noise_seed: int = 0

  def resolved_auto_forward_zones(self) -> tuple[tuple[float, float], ...]:
    zones = tuple(self.auto_forward_zones)
    if self.box_course:
      zones = zones + box_course_zones()
    return zones
