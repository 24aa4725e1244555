from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any

import numpy as np
import torch
import torch.nn.functional as F

from depth_locomotion_bridge.policy_server.config import DepthConfig, DepthCropConfig
from depth_locomotion_bridge.policy_server.runtime import InferenceRuntime


@dataclass(frozen=True)
class DepthFrame:
  """Linear depth in meters, shape ``(height, width)``, rows bottom-up."""

  data: torch.Tensor
  width: int
  height: int
  clipping_range: tuple[float, float] = (0.3, 3.0)

  @classmethod
  def from_buffer(
    cls,
    buffer: Any,
    width: int,
    height: int,
    clipping_range: tuple[float, float] = (0.3, 3.0),
  ) -> DepthFrame:
    data = torch.as_tensor(np.asarray(buffer, dtype=np.float32)).reshape(height, width)
    return cls(data=data, width=int(width), height=int(height), clipping_range=clipping_range)


class DepthPreprocessor:
  """Crop, bilinear resize and range-normalize depth frames to [-0.5, 0.5]."""

  def __init__(
    self,
    crop: DepthCropConfig,
    resize_width: int,
    resize_height: int,
  ):
    self.crop = crop
    self.resize_width = resize_width
    self.resize_height = resize_height
    self._last_processed: torch.Tensor | None = None

  def crop_frame(self, frame: DepthFrame) -> torch.Tensor:
    c = self.crop
    cropped_w = max(0, frame.width - c.left - c.right)
    cropped_h = max(0, frame.height - c.top - c.bottom)
    if cropped_w == 0 or cropped_h == 0:
      raise ValueError(
        f"Depth crop {c} leaves an empty image for a {frame.width}x{frame.height} frame."
      )
    return frame.data[c.top : c.top + cropped_h, c.left : c.left + cropped_w]

  def resize(self, image: torch.Tensor) -> torch.Tensor:
    if tuple(image.shape) == (self.resize_height, self.resize_width):
      return image.clone()
    resized = F.interpolate(
      image[None, None].to(dtype=torch.float32),
      size=(self.resize_height, self.resize_width),
      mode="bilinear",
      align_corners=False,
    )
    return resized[0, 0]

  def __call__(self, frame: DepthFrame) -> torch.Tensor:
    min_depth, max_depth = frame.clipping_range
    if not max_depth > min_depth:
      raise ValueError(f"Invalid depth clipping range: {frame.clipping_range}")
    resized = self.resize(self.crop_frame(frame))
    clipped = resized.clamp(min=min_depth, max=max_depth)
    processed = (clipped - min_depth) / (max_depth - min_depth) - 0.5
    self._last_processed = processed.clone()
    return processed

  def processed_preview(self) -> torch.Tensor | None:
    """Copy of the most recent model-ready image, for inspection."""
    if self._last_processed is None:
      return None
    return self._last_processed.clone()

  def reset(self) -> None:
    self._last_processed = None


class DepthLatentQueue:
  """Tick-counted FIFO emulating perception latency.

  ``None`` entries mark ticks where no feature was available so the delay
  stays exact regardless of extraction success.
  """

  def __init__(self, latency_steps: int):
    if latency_steps < 0:
      raise ValueError(f"latency_steps must be >= 0, got {latency_steps}")
    self.latency_steps = latency_steps
    self._queue: deque[torch.Tensor | None] = deque()

  def __len__(self) -> int:
    return len(self._queue)

  def push(self, feature: torch.Tensor | None) -> torch.Tensor | None:
    """Enqueue this tick's entry and return the delayed one."""
    self._queue.append(None if feature is None else feature.clone())
    if len(self._queue) > self.latency_steps:
      return self._queue.popleft()
    # Warm-up: reuse the oldest entry until the queue is full.
    return self._queue[0]

  def reset(self) -> None:
    self._queue.clear()


class DepthFeatureExtractor:
  """Runs the depth backbone and feeds the latency queue."""

  def __init__(
    self,
    cfg: DepthConfig,
    runtime: InferenceRuntime | None,
    device: str = "cpu",
  ):
    self.cfg = cfg
    self.runtime = runtime
    self.device = device
    self.preprocessor = DepthPreprocessor(cfg.crop, cfg.resize_width, cfg.resize_height)
    self.queue = DepthLatentQueue(cfg.latency_steps)
    self.latest_frame: DepthFrame | None = None

    self._input_name: str | None = None
    self._output_name: str | None = None
    self._input_rank = 3
    if runtime is not None:
      self._input_name = runtime.input_names[0]
      self._output_name = runtime.output_names[0]
      shape = runtime.input_shape(self._input_name)
      if shape is not None and len(shape) == 4:
        self._input_rank = 4

  @property
  def available(self) -> bool:
    return self.runtime is not None

  def set_frame(self, frame: DepthFrame | None) -> None:
    self.latest_frame = frame

  def _model_input(self, processed: torch.Tensor) -> np.ndarray:
    # The backbone was trained on vertically flipped images.
    image = torch.flip(processed, dims=(0,))
    if self._input_rank == 4:
      image = image[None, None]
    else:
      image = image[None]
    return image.to(device="cpu", dtype=torch.float32).contiguous().numpy()

  async def extract(self) -> torch.Tensor | None:
    """Return this tick's feature, or ``None`` when unavailable."""
    if self.runtime is None or self.latest_frame is None:
      return None
    assert self._input_name is not None and self._output_name is not None
    processed = self.preprocessor(self.latest_frame)
    outputs = await self.runtime.run({self._input_name: self._model_input(processed)})
    output = outputs.get(self._output_name)
    if output is None:
      return None
    feature = np.asarray(output, dtype=np.float32).reshape(-1)
    if feature.size != self.cfg.feature_dim:
      print(
        f"[WARN] Depth backbone output length mismatch: {feature.size} "
        f"(expected {self.cfg.feature_dim})"
      )
      return None
    return torch.from_numpy(feature.copy()).to(device=self.device)

  async def step(self) -> torch.Tensor:
    """Extract, enqueue, and return the delayed feature (zeros when absent)."""
    feature: torch.Tensor | None = None
    if self.available:
      try:
        feature = await self.extract()
      except Exception as exc:
        print(f"[WARN] Depth backbone inference failed: {exc}")
        feature = None
    delayed = self.queue.push(feature)
    if delayed is None:
      return torch.zeros((self.cfg.feature_dim,), device=self.device)
    return delayed

  def reset(self) -> None:
    self.queue.reset()
