from __future__ import annotations

from dataclasses import dataclass

import mujoco
import torch

from depth_locomotion_bridge.numerics import normalize_quat, normalize_vec3


@dataclass
class SimContext:
  """Explicit handle on the simulation the bridge reads from and writes to."""

  model: mujoco.MjModel
  data: mujoco.MjData
  device: str = "cpu"

  @property
  def timestep(self) -> float:
    return float(self.model.opt.timestep)

  def qpos(self) -> torch.Tensor:
    return torch.as_tensor(self.data.qpos, device=self.device, dtype=torch.float32)

  def qvel(self) -> torch.Tensor:
    return torch.as_tensor(self.data.qvel, device=self.device, dtype=torch.float32)

  def body_quat(self, body_id: int) -> torch.Tensor:
    return torch.as_tensor(self.data.xquat[body_id], device=self.device, dtype=torch.float32)


@dataclass(frozen=True)
class JointBinding:
  name: str
  joint_id: int | None = None
  qpos_adr: int | None = None
  qvel_adr: int | None = None
  ctrl_index: int | None = None

  @property
  def resolved(self) -> bool:
    return self.joint_id is not None

  @property
  def actuated(self) -> bool:
    return self.ctrl_index is not None


@dataclass(frozen=True)
class RootBinding:
  joint_id: int | None
  qpos_adr: int | None
  dof_adr: int | None
  anchor_body_id: int | None
  gravity_dir: torch.Tensor


def _name_to_id(model: mujoco.MjModel, obj: mujoco.mjtObj, name: str) -> int | None:
  obj_id = mujoco.mj_name2id(model, obj, name)
  return int(obj_id) if obj_id >= 0 else None


def _actuator_for_joint(model: mujoco.MjModel) -> dict[int, int]:
  # First actuator wins when several drive the same joint.
  joint_to_ctrl: dict[int, int] = {}
  for actuator_id in range(model.nu):
    if int(model.actuator_trntype[actuator_id]) != int(mujoco.mjtTrn.mjTRN_JOINT):
      continue
    joint_id = int(model.actuator_trnid[actuator_id, 0])
    if joint_id >= 0 and joint_id not in joint_to_ctrl:
      joint_to_ctrl[joint_id] = actuator_id
  return joint_to_ctrl


def bind_joints(ctx: SimContext, joint_names: tuple[str, ...] | list[str]) -> tuple[JointBinding, ...]:
  """Resolve policy joint names to qpos/qvel addresses and ctrl indices.

  Unresolved names and unactuated joints are reported but never fatal.
  """
  model = ctx.model
  joint_to_ctrl = _actuator_for_joint(model)

  bindings: list[JointBinding] = []
  for name in joint_names:
    joint_id = _name_to_id(model, mujoco.mjtObj.mjOBJ_JOINT, name)
    if joint_id is None:
      bindings.append(JointBinding(name=name))
      continue
    bindings.append(
      JointBinding(
        name=name,
        joint_id=joint_id,
        qpos_adr=int(model.jnt_qposadr[joint_id]),
        qvel_adr=int(model.jnt_dofadr[joint_id]),
        ctrl_index=joint_to_ctrl.get(joint_id),
      )
    )

  missing = [b.name for b in bindings if not b.resolved]
  if missing:
    print(f"[WARN] Policy joint names missing from model: {missing}")
  unactuated = [b.name for b in bindings if b.resolved and not b.actuated]
  if unactuated:
    print(f"[WARN] Policy joints without actuators: {unactuated}")
  return tuple(bindings)


def bind_root(ctx: SimContext, anchor_body_name: str | None) -> RootBinding:
  model = ctx.model
  root_joint_id: int | None = None
  for joint_id in range(model.njnt):
    if int(model.jnt_type[joint_id]) == int(mujoco.mjtJoint.mjJNT_FREE):
      root_joint_id = joint_id
      break
  if root_joint_id is None:
    print("[WARN] No free root joint found; base observations will be zero.")

  anchor_body_id = None
  if anchor_body_name:
    anchor_body_id = _name_to_id(model, mujoco.mjtObj.mjOBJ_BODY, anchor_body_name)
    if anchor_body_id is None:
      print(
        f"[WARN] Anchor body '{anchor_body_name}' not found; "
        "anchor gravity falls back to the root projection."
      )

  gravity = torch.as_tensor(model.opt.gravity, device=ctx.device, dtype=torch.float32)
  return RootBinding(
    joint_id=root_joint_id,
    qpos_adr=int(model.jnt_qposadr[root_joint_id]) if root_joint_id is not None else None,
    dof_adr=int(model.jnt_dofadr[root_joint_id]) if root_joint_id is not None else None,
    anchor_body_id=anchor_body_id,
    gravity_dir=normalize_vec3(gravity.clone()),
  )


def root_quat(ctx: SimContext, root: RootBinding) -> torch.Tensor:
  if root.qpos_adr is None:
    return torch.tensor([1.0, 0.0, 0.0, 0.0], device=ctx.device)
  qpos = ctx.qpos()
  return normalize_quat(qpos[root.qpos_adr + 3 : root.qpos_adr + 7])


def gather_joint_values(
  values: torch.Tensor,
  bindings: tuple[JointBinding, ...],
  attr: str,
) -> torch.Tensor:
  """Pick per-joint values at the bound addresses; unresolved joints read 0."""
  out = torch.zeros((len(bindings),), device=values.device, dtype=torch.float32)
  for i, binding in enumerate(bindings):
    adr = getattr(binding, attr)
    if adr is not None:
      out[i] = values[adr]
  return out
