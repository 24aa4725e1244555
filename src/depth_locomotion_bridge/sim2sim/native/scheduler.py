from __future__ import annotations

import numpy as np
import torch

from depth_locomotion_bridge.policy_server.metadata import PolicyMetadata
from depth_locomotion_bridge.policy_server.runtime import (
  InferenceRuntime,
  select_action_output,
)
from depth_locomotion_bridge.sim2sim.native.actions import ControlLawApplier
from depth_locomotion_bridge.sim2sim.native.commands import CommandStateMachine
from depth_locomotion_bridge.sim2sim.native.depth import DepthFeatureExtractor
from depth_locomotion_bridge.sim2sim.native.observations import ObservationAssembler
from depth_locomotion_bridge.sim2sim.native.state import SimContext

TIME_STEP_INPUT = "time_step"


class InferenceScheduler:
  """Single in-flight slot around the primary policy network.

  A request that arrives while another one is in flight is dropped, so the
  previous control target stays in effect.
  """

  def __init__(
    self,
    runtime: InferenceRuntime,
    metadata: PolicyMetadata,
    observations: ObservationAssembler,
    depth: DepthFeatureExtractor,
    commands: CommandStateMachine,
    control: ControlLawApplier,
    device: str = "cpu",
  ):
    self.runtime = runtime
    self.metadata = metadata
    self.observations = observations
    self.depth = depth
    self.commands = commands
    self.control = control
    self.device = device
    self.in_flight = False
    self.ready = True

    inputs = [name for name in runtime.input_names if name != TIME_STEP_INPUT]
    if not inputs:
      raise ValueError("Policy runtime declares no observation input.")
    self.input_name = inputs[0]
    self.feeds_time_step = TIME_STEP_INPUT in runtime.input_names
    self.output_name = select_action_output(tuple(runtime.output_names))

  def _policy_input(self, obs: torch.Tensor, depth_feature: torch.Tensor) -> np.ndarray:
    merged = torch.cat([obs, depth_feature.to(device=obs.device, dtype=obs.dtype)])
    return merged.reshape(1, -1).cpu().numpy().astype(np.float32)

  def _decode_action(self, outputs: dict[str, np.ndarray]) -> torch.Tensor:
    action = outputs.get(self.output_name)
    if action is None:
      raise ValueError(f"Policy output missing action tensor '{self.output_name}'.")
    flat = np.asarray(action, dtype=np.float32).reshape(-1)
    if flat.size != self.metadata.num_joints:
      raise ValueError(
        f"Action length {flat.size} does not match joint count {self.metadata.num_joints}"
      )
    return torch.from_numpy(flat.copy()).to(self.device)

  async def request_action(self, ctx: SimContext) -> bool:
    """Run one inference. Returns False when the request was dropped."""
    if not self.ready or self.in_flight:
      return False
    # Claimed before the first await.
    self.in_flight = True
    try:
      obs = self.observations.compute(ctx, self.commands.state)
      depth_feature = await self.depth.step()

      feeds = {self.input_name: self._policy_input(obs, depth_feature)}
      if self.feeds_time_step:
        feeds[TIME_STEP_INPUT] = np.zeros((1, 1), dtype=np.float32)

      outputs = await self.runtime.run(feeds)
      action = self._decode_action(outputs)

      self.observations.set_prev_action(action)
      self.control.set_action(action)
      return True
    finally:
      self.in_flight = False
