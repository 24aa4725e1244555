from __future__ import annotations

from typing import Any

import torch

from depth_locomotion_bridge.policy_server.config import PolicyControllerConfig
from depth_locomotion_bridge.policy_server.metadata import (
  PolicyMetadata,
  resolve_policy_metadata,
)
from depth_locomotion_bridge.policy_server.runtime import (
  InferenceRuntime,
  OnnxInferenceRuntime,
)
from depth_locomotion_bridge.sim2sim.native.actions import ControlLawApplier
from depth_locomotion_bridge.sim2sim.native.commands import CommandStateMachine
from depth_locomotion_bridge.sim2sim.native.depth import DepthFeatureExtractor, DepthFrame
from depth_locomotion_bridge.sim2sim.native.observations import ObservationAssembler
from depth_locomotion_bridge.sim2sim.native.scheduler import InferenceScheduler
from depth_locomotion_bridge.sim2sim.native.state import (
  JointBinding,
  RootBinding,
  SimContext,
  bind_joints,
  bind_root,
)


def decimation_for(control_dt: float, timestep: float) -> int:
  """Simulation substeps per policy call."""
  if timestep <= 0.0:
    raise ValueError(f"Simulation timestep must be positive, got {timestep}")
  return max(1, int(round(control_dt / timestep)))


def _load_depth_runtime(path: str | None) -> InferenceRuntime | None:
  if path is None:
    return None
  try:
    return OnnxInferenceRuntime.from_file(path, label="depth backbone")
  except Exception as exc:
    print(f"[WARN] Depth backbone not available, using zeros: {exc}")
    return None


class PolicyController:
  """Facade wiring metadata, bindings, perception and control for one policy.

  Runtimes may be injected; otherwise they are loaded from the configured
  ONNX files on construction.
  """

  def __init__(
    self,
    cfg: PolicyControllerConfig,
    *,
    policy_runtime: InferenceRuntime | None = None,
    depth_runtime: InferenceRuntime | None = None,
  ):
    self.cfg = cfg
    self.device = cfg.device
    if policy_runtime is None:
      policy_runtime = OnnxInferenceRuntime.from_file(cfg.policy_file, label="policy")
    self.policy_runtime = policy_runtime
    if depth_runtime is None and cfg.depth.enabled:
      depth_runtime = _load_depth_runtime(cfg.resolve_depth_model_path())
    self.depth_runtime = depth_runtime if cfg.depth.enabled else None

    self.commands = CommandStateMachine(high_speed=cfg.high_speed, device=self.device)
    self.depth = DepthFeatureExtractor(cfg.depth, self.depth_runtime, device=self.device)

    self.metadata: PolicyMetadata | None = None
    self.joints: tuple[JointBinding, ...] = ()
    self.root: RootBinding | None = None
    self.observations: ObservationAssembler | None = None
    self.control: ControlLawApplier | None = None
    self.scheduler: InferenceScheduler | None = None

  @property
  def is_ready(self) -> bool:
    return self.scheduler is not None and self.scheduler.ready

  @property
  def in_flight(self) -> bool:
    return self.scheduler is not None and self.scheduler.in_flight

  @property
  def target(self) -> torch.Tensor | None:
    return None if self.control is None else self.control.target

  def _resolve_metadata(self) -> PolicyMetadata:
    return resolve_policy_metadata(
      session=self.policy_runtime,
      model_bytes=getattr(self.policy_runtime, "model_bytes", None),
    )

  def init(self, ctx: SimContext) -> None:
    self.metadata = self._resolve_metadata()
    print(
      f"[INFO] Policy metadata: {self.metadata.num_joints} joints, "
      f"obs_dim={self.metadata.obs_dim}, "
      f"observations={[t.value for t in self.metadata.observation_names]}"
    )
    self.rebuild(ctx)

  def rebuild(self, ctx: SimContext) -> None:
    """Rebind against a (possibly new) model and reset session state."""
    if self.metadata is None:
      raise RuntimeError("PolicyController.rebuild() called before init().")
    self.joints = bind_joints(ctx, self.metadata.joint_names)
    self.root = bind_root(ctx, self.cfg.anchor_body_name)
    self.observations = ObservationAssembler(self.metadata, self.joints, self.root, self.device)
    self.control = ControlLawApplier(self.metadata, self.joints, self.device)
    self.scheduler = InferenceScheduler(
      runtime=self.policy_runtime,
      metadata=self.metadata,
      observations=self.observations,
      depth=self.depth,
      commands=self.commands,
      control=self.control,
      device=self.device,
    )
    self.reset()

  def reset(self) -> None:
    if self.scheduler is None:
      return
    assert self.observations is not None and self.control is not None
    self.observations.reset()
    self.control.reset()
    self.commands.reset()
    self.depth.reset()

  def decimation_for(self, timestep: float) -> int:
    return decimation_for(self.cfg.control_dt, timestep)

  def set_depth_image(self, data: Any, width: int, height: int) -> None:
    self.depth.set_frame(
      DepthFrame.from_buffer(data, width, height, self.cfg.depth.clipping_range)
    )

  def processed_depth_preview(self) -> torch.Tensor | None:
    return self.depth.preprocessor.processed_preview()

  def set_auto_forward(self, enabled: bool) -> None:
    self.commands.set_auto_forward(enabled)

  async def request_action(self, ctx: SimContext) -> bool:
    if self.scheduler is None:
      return False
    return await self.scheduler.request_action(ctx)

  def apply_control(self, ctx: SimContext) -> torch.Tensor | None:
    if not self.is_ready:
      return None
    assert self.control is not None
    return self.control.apply(ctx)
