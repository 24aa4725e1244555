from __future__ import annotations

import torch


def normalize_quat(quat: torch.Tensor) -> torch.Tensor:
  """Normalize ``(..., 4)`` wxyz quaternions; zero-norm inputs become identity."""
  norm = torch.linalg.vector_norm(quat, dim=-1, keepdim=True)
  identity = torch.zeros_like(quat)
  identity[..., 0] = 1.0
  return torch.where(norm > 0.0, quat / norm.clamp_min(1e-12), identity)


def normalize_vec3(vec: torch.Tensor, fallback: tuple[float, float, float] = (0.0, 0.0, -1.0)) -> torch.Tensor:
  norm = torch.linalg.vector_norm(vec, dim=-1, keepdim=True)
  default = torch.tensor(fallback, dtype=vec.dtype, device=vec.device).expand_as(vec)
  return torch.where(norm > 0.0, vec / norm.clamp_min(1e-12), default)


def quat_apply_inverse(quat: torch.Tensor, vec: torch.Tensor) -> torch.Tensor:
  """Rotate ``vec`` by the inverse of wxyz ``quat`` (world frame -> body frame)."""
  w = quat[..., 0:1]
  xyz = quat[..., 1:4]
  t = 2.0 * torch.cross(xyz, vec, dim=-1)
  return vec - w * t + torch.cross(xyz, t, dim=-1)
