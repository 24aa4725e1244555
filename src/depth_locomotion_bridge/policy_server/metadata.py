from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

import torch

from depth_locomotion_bridge.policy_server.wire import decode_model_metadata

REQUIRED_METADATA_KEYS = ("joint_names", "observation_names")

COMMAND_VECTOR_DIM = 15
COMMAND_PLACEHOLDER_DIM = 3


class ObservationToken(str, enum.Enum):
  """Closed vocabulary of observation-schema tokens."""

  BASE_LIN_VEL = "base_lin_vel"
  BASE_ANG_VEL = "base_ang_vel"
  PROJECTED_GRAVITY = "projected_gravity"
  ROBOT_ANCHOR_PROJECTED_GRAVITY = "robot_anchor_projected_gravity"
  # Reserved 3-d command slot, always zero-filled.
  COMMAND = "command"
  # Carries the 15-slot one-hot command vector.
  PLACEHOLDER = "placeholder"
  JOINT_POS = "joint_pos"
  JOINT_VEL = "joint_vel"
  ACTIONS = "actions"

  @classmethod
  def parse(cls, name: str) -> ObservationToken:
    try:
      return cls(name)
    except ValueError:
      raise ValueError(
        f"Unknown observation name: '{name}'. "
        f"Supported names: {[t.value for t in cls]}"
      ) from None


def observation_term_size(token: ObservationToken, num_joints: int) -> int:
  if token in (
    ObservationToken.BASE_LIN_VEL,
    ObservationToken.BASE_ANG_VEL,
    ObservationToken.PROJECTED_GRAVITY,
    ObservationToken.ROBOT_ANCHOR_PROJECTED_GRAVITY,
  ):
    return 3
  if token == ObservationToken.COMMAND:
    return COMMAND_PLACEHOLDER_DIM
  if token == ObservationToken.PLACEHOLDER:
    return COMMAND_VECTOR_DIM
  if token in (
    ObservationToken.JOINT_POS,
    ObservationToken.JOINT_VEL,
    ObservationToken.ACTIONS,
  ):
    return num_joints
  raise NotImplementedError(f"No size rule for observation token: {token!r}")


def observation_slices(
  tokens: tuple[ObservationToken, ...] | list[ObservationToken],
  num_joints: int,
) -> list[tuple[ObservationToken, slice]]:
  """Compute the (token, slice) layout of the observation buffer, in schema order."""
  out: list[tuple[ObservationToken, slice]] = []
  offset = 0
  for token in tokens:
    size = observation_term_size(token, num_joints)
    out.append((token, slice(offset, offset + size)))
    offset += size
  return out


def observation_size(
  tokens: tuple[ObservationToken, ...] | list[ObservationToken],
  num_joints: int,
) -> int:
  return sum(observation_term_size(token, num_joints) for token in tokens)


@dataclass(frozen=True)
class PolicyMetadata:
  joint_names: tuple[str, ...]
  observation_names: tuple[ObservationToken, ...]
  action_scale: torch.Tensor
  default_joint_pos: torch.Tensor
  kp: torch.Tensor
  kd: torch.Tensor
  raw: dict[str, str] = field(default_factory=dict, repr=False, compare=False)

  @property
  def num_joints(self) -> int:
    return len(self.joint_names)

  @property
  def obs_dim(self) -> int:
    return observation_size(self.observation_names, self.num_joints)


def parse_csv(value: Any) -> list[str]:
  if value is None:
    return []
  if isinstance(value, (list, tuple)):
    return [str(v).strip() for v in value if str(v).strip()]
  return [entry.strip() for entry in str(value).split(",") if entry.strip()]


def parse_number_csv(value: Any) -> list[float]:
  out: list[float] = []
  for entry in parse_csv(value):
    try:
      out.append(float(entry))
    except ValueError:
      out.append(math.nan)
  return out


def _per_joint(
  key: str,
  values: list[float],
  num_joints: int,
  fill_value: float,
  *,
  broadcast_scalar: bool = False,
) -> torch.Tensor:
  if broadcast_scalar and len(values) == 1 and num_joints > 1:
    values = values * num_joints
  if not values:
    print(f"[WARN] Policy metadata '{key}' missing; using {fill_value} for all joints.")
  elif len(values) != num_joints:
    print(
      f"[WARN] Policy metadata '{key}' has {len(values)} values for {num_joints} "
      f"joints; padding/truncating with {fill_value}."
    )
  out = torch.full((num_joints,), fill_value, dtype=torch.float32)
  bad: list[int] = []
  for i in range(min(len(values), num_joints)):
    if math.isfinite(values[i]):
      out[i] = values[i]
    else:
      bad.append(i)
  if bad:
    print(
      f"[WARN] Policy metadata '{key}' has non-numeric entries at {bad}; "
      f"using {fill_value}."
    )
  return out


def build_policy_metadata(raw: Mapping[str, str]) -> PolicyMetadata:
  """Validate a raw key/value map and build :class:`PolicyMetadata`."""
  joint_names = parse_csv(raw.get("joint_names"))
  if not joint_names:
    raise ValueError("Policy metadata missing joint_names.")
  duplicates = sorted({n for n in joint_names if joint_names.count(n) > 1})
  if duplicates:
    raise ValueError(f"Policy metadata joint_names has duplicates: {duplicates}")

  observation_names = parse_csv(raw.get("observation_names"))
  if not observation_names:
    raise ValueError("Policy metadata missing observation_names.")
  tokens = tuple(ObservationToken.parse(name) for name in observation_names)

  num_joints = len(joint_names)
  return PolicyMetadata(
    joint_names=tuple(joint_names),
    observation_names=tokens,
    action_scale=_per_joint(
      "action_scale",
      parse_number_csv(raw.get("action_scale")),
      num_joints,
      1.0,
      broadcast_scalar=True,
    ),
    default_joint_pos=_per_joint(
      "default_joint_pos", parse_number_csv(raw.get("default_joint_pos")), num_joints, 0.0
    ),
    kp=_per_joint(
      "joint_stiffness", parse_number_csv(raw.get("joint_stiffness")), num_joints, 0.0
    ),
    kd=_per_joint(
      "joint_damping", parse_number_csv(raw.get("joint_damping")), num_joints, 0.0
    ),
    raw=dict(raw),
  )


class MetadataSource(Protocol):
  name: str

  def available(self) -> bool: ...

  def read(self) -> dict[str, str]: ...


class StructuredMetadataSource:
  """Reads custom metadata exposed by the inference runtime."""

  name = "runtime"

  def __init__(self, session: Any):
    self._session = session

  def _metadata_map(self) -> Mapping[str, str] | None:
    if self._session is None:
      return None
    getter = getattr(self._session, "custom_metadata", None)
    if callable(getter):
      return getter()
    modelmeta = getattr(self._session, "get_modelmeta", None)
    if callable(modelmeta):
      return getattr(modelmeta(), "custom_metadata_map", None)
    return None

  def available(self) -> bool:
    meta = self._metadata_map()
    return meta is not None and len(meta) > 0

  def read(self) -> dict[str, str]:
    return {str(k): str(v) for k, v in (self._metadata_map() or {}).items()}


class RawScanMetadataSource:
  """Scans serialized ONNX bytes for ``metadata_props``."""

  name = "raw-scan"

  def __init__(self, model_bytes: bytes | None):
    self._model_bytes = model_bytes

  def available(self) -> bool:
    return bool(self._model_bytes)

  def read(self) -> dict[str, str]:
    assert self._model_bytes is not None
    return decode_model_metadata(self._model_bytes)


def resolve_policy_metadata(
  *,
  session: Any = None,
  model_bytes: bytes | None = None,
) -> PolicyMetadata:
  """Resolve policy metadata, preferring runtime access over the raw byte scan."""
  sources: list[MetadataSource] = [
    StructuredMetadataSource(session),
    RawScanMetadataSource(model_bytes),
  ]
  for source in sources:
    if not source.available():
      if source.name == "runtime":
        print(
          "[WARN] Policy metadata is unavailable from the inference runtime. "
          "Falling back to raw ONNX scan."
        )
      continue
    raw = source.read()
    print(f"[INFO] Policy metadata keys ({source.name}): {sorted(raw.keys())}")
    return build_policy_metadata(raw)
  raise ValueError("Policy metadata could not be read (no runtime metadata and no model bytes).")
