from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol, runtime_checkable

import numpy as np
import onnxruntime


@runtime_checkable
class InferenceRuntime(Protocol):
  """Opaque async network runtime: named tensors in, named tensors out.

  The control loop only relies on this contract so the ONNX session can be
  replaced by a remote or fake runtime.
  """

  input_names: tuple[str, ...]
  output_names: tuple[str, ...]

  def input_shape(self, name: str) -> tuple[int | None, ...] | None: ...

  def custom_metadata(self) -> dict[str, str]: ...

  async def run(self, feeds: dict[str, np.ndarray]) -> dict[str, np.ndarray]: ...


def _static_dims(shape) -> tuple[int | None, ...] | None:
  if shape is None:
    return None
  return tuple(dim if isinstance(dim, int) and dim > 0 else None for dim in shape)


class OnnxInferenceRuntime:
  """ONNXRuntime session exposed as an awaitable runtime.

  ``session.run`` executes on a worker thread so callers can ``await`` it.
  """

  def __init__(
    self,
    model_bytes: bytes,
    *,
    providers: list[str] | None = None,
    label: str = "policy",
  ):
    self.model_bytes = model_bytes
    self.label = label
    self.session = onnxruntime.InferenceSession(
      model_bytes,
      providers=providers or ["CPUExecutionProvider"],
    )
    self.input_names = tuple(i.name for i in self.session.get_inputs())
    self.output_names = tuple(o.name for o in self.session.get_outputs())
    self._input_shapes = {
      i.name: _static_dims(i.shape) for i in self.session.get_inputs()
    }
    print(
      f"[INFO] ONNX {label} session ready: inputs={list(self.input_names)}, "
      f"outputs={list(self.output_names)}"
    )

  @classmethod
  def from_file(
    cls,
    path: str | Path,
    *,
    providers: list[str] | None = None,
    label: str = "policy",
  ) -> OnnxInferenceRuntime:
    model_path = Path(path)
    if not model_path.exists():
      raise FileNotFoundError(f"ONNX {label} model not found: {model_path}")
    return cls(model_path.read_bytes(), providers=providers, label=label)

  def input_shape(self, name: str) -> tuple[int | None, ...] | None:
    return self._input_shapes.get(name)

  def custom_metadata(self) -> dict[str, str]:
    meta = self.session.get_modelmeta()
    return dict(getattr(meta, "custom_metadata_map", None) or {})

  async def run(self, feeds: dict[str, np.ndarray]) -> dict[str, np.ndarray]:
    outputs = await asyncio.to_thread(self.session.run, None, feeds)
    return dict(zip(self.output_names, outputs, strict=True))


def select_action_output(output_names: tuple[str, ...]) -> str:
  """Prefer an output whose name mentions ``action``; otherwise the first output."""
  if not output_names:
    raise ValueError("Policy runtime declares no outputs.")
  for name in output_names:
    if "action" in name.lower():
      return name
  return output_names[0]
