from __future__ import annotations

import torch

from depth_locomotion_bridge.numerics import quat_apply_inverse
from depth_locomotion_bridge.policy_server.metadata import (
  ObservationToken,
  PolicyMetadata,
  observation_slices,
)
from depth_locomotion_bridge.sim2sim.native.state import (
  JointBinding,
  RootBinding,
  SimContext,
  gather_joint_values,
  root_quat,
)


class ObservationAssembler:
  """Writes the policy observation into a preallocated buffer, schema order."""

  def __init__(
    self,
    metadata: PolicyMetadata,
    joints: tuple[JointBinding, ...],
    root: RootBinding,
    device: str = "cpu",
  ):
    self.metadata = metadata
    self.joints = joints
    self.root = root
    self.device = device
    self.layout = observation_slices(metadata.observation_names, metadata.num_joints)
    self.buffer = torch.zeros((metadata.obs_dim,), device=device, dtype=torch.float32)
    self.default_joint_pos = metadata.default_joint_pos.to(device)
    self.prev_action = torch.zeros((metadata.num_joints,), device=device)

  def reset(self) -> None:
    self.buffer.zero_()
    self.prev_action.zero_()

  def set_prev_action(self, action: torch.Tensor) -> None:
    self.prev_action.copy_(action.reshape(-1))

  def _base_lin_vel(self, qvel: torch.Tensor) -> torch.Tensor:
    if self.root.dof_adr is None:
      return torch.zeros((3,), device=self.device)
    return qvel[self.root.dof_adr : self.root.dof_adr + 3]

  def _base_ang_vel(self, qvel: torch.Tensor) -> torch.Tensor:
    if self.root.dof_adr is None:
      return torch.zeros((3,), device=self.device)
    return qvel[self.root.dof_adr + 3 : self.root.dof_adr + 6]

  def _projected_gravity(self, ctx: SimContext) -> torch.Tensor:
    quat = root_quat(ctx, self.root)
    return quat_apply_inverse(quat, self.root.gravity_dir.to(self.device))

  def _anchor_projected_gravity(self, ctx: SimContext) -> torch.Tensor:
    if self.root.anchor_body_id is None:
      return self._projected_gravity(ctx)
    quat = ctx.body_quat(self.root.anchor_body_id)
    quat = quat / torch.linalg.vector_norm(quat).clamp_min(1e-12)
    return quat_apply_inverse(quat, self.root.gravity_dir.to(self.device))

  def compute(self, ctx: SimContext, command: torch.Tensor) -> torch.Tensor:
    qpos = ctx.qpos()
    qvel = ctx.qvel()
    for token, sl in self.layout:
      if token == ObservationToken.BASE_LIN_VEL:
        value = self._base_lin_vel(qvel)
      elif token == ObservationToken.BASE_ANG_VEL:
        value = self._base_ang_vel(qvel)
      elif token == ObservationToken.PROJECTED_GRAVITY:
        value = self._projected_gravity(ctx)
      elif token == ObservationToken.ROBOT_ANCHOR_PROJECTED_GRAVITY:
        value = self._anchor_projected_gravity(ctx)
      elif token == ObservationToken.PLACEHOLDER:
        value = command
      elif token == ObservationToken.COMMAND:
        value = torch.zeros((sl.stop - sl.start,), device=self.device)
      elif token == ObservationToken.JOINT_POS:
        current = gather_joint_values(qpos, self.joints, "qpos_adr")
        # Unbound joints report zero error rather than -default.
        resolved = torch.tensor(
          [b.resolved for b in self.joints], device=self.device, dtype=torch.bool
        )
        value = torch.where(resolved, current - self.default_joint_pos, 0.0)
      elif token == ObservationToken.JOINT_VEL:
        value = gather_joint_values(qvel, self.joints, "qvel_adr")
      elif token == ObservationToken.ACTIONS:
        value = self.prev_action
      else:
        raise NotImplementedError(f"No observation assembly for token: {token!r}")
      self.buffer[sl] = value.to(device=self.device, dtype=torch.float32)
    return self.buffer
