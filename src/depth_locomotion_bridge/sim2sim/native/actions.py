from __future__ import annotations

import math

import torch

from depth_locomotion_bridge.policy_server.metadata import PolicyMetadata
from depth_locomotion_bridge.sim2sim.native.state import JointBinding, SimContext


def pd_torque(
  kp: torch.Tensor,
  kd: torch.Tensor,
  target: torch.Tensor,
  joint_pos: torch.Tensor,
  joint_vel: torch.Tensor,
) -> torch.Tensor:
  """Position-hold PD law; the velocity target is always zero."""
  return kp * (target - joint_pos) + kd * (0.0 - joint_vel)


class ControlLawApplier:
  """Holds the control target and writes PD torques into ``data.ctrl``."""

  def __init__(
    self,
    metadata: PolicyMetadata,
    joints: tuple[JointBinding, ...],
    device: str = "cpu",
  ):
    self.joints = joints
    self.device = device
    self.action_scale = metadata.action_scale.to(device)
    self.default_joint_pos = metadata.default_joint_pos.to(device)
    self.kp = metadata.kp.to(device)
    self.kd = metadata.kd.to(device)
    self.target = self.default_joint_pos.clone()

  def reset(self) -> None:
    self.target = self.default_joint_pos.clone()

  def set_action(self, action: torch.Tensor) -> None:
    self.target = self.default_joint_pos + self.action_scale * action.to(self.device)

  def compute_torques(self, ctx: SimContext) -> torch.Tensor:
    qpos = ctx.qpos()
    qvel = ctx.qvel()
    pos = torch.zeros_like(self.target)
    vel = torch.zeros_like(self.target)
    for i, binding in enumerate(self.joints):
      if binding.qpos_adr is not None:
        pos[i] = qpos[binding.qpos_adr]
      if binding.qvel_adr is not None:
        vel[i] = qvel[binding.qvel_adr]
    return pd_torque(self.kp, self.kd, self.target, pos, vel)

  def apply(self, ctx: SimContext) -> torch.Tensor:
    torques = self.compute_torques(ctx)
    ctrl_range = ctx.model.actuator_ctrlrange
    for i, binding in enumerate(self.joints):
      if binding.ctrl_index is None:
        continue
      value = float(torques[i])
      lo = float(ctrl_range[binding.ctrl_index, 0])
      hi = float(ctrl_range[binding.ctrl_index, 1])
      if math.isfinite(lo) and math.isfinite(hi) and lo < hi:
        value = min(max(value, lo), hi)
      ctx.data.ctrl[binding.ctrl_index] = value
    return torques
