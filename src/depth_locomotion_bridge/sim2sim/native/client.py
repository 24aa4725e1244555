from __future__ import annotations

import math
import os
from pathlib import Path
from typing import Any

import mediapy as media
import mujoco
import numpy as np
import torch

from depth_locomotion_bridge.sim2sim.native.config import NativeSim2SimConfig
from depth_locomotion_bridge.sim2sim.native.controller import PolicyController
from depth_locomotion_bridge.sim2sim.native.state import SimContext


def _has_render_backend() -> bool:
  has_display = bool(os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY"))
  return has_display or os.environ.get("MUJOCO_GL") in {"egl", "osmesa"}


def load_model(mjcf_file: str | Path) -> mujoco.MjModel:
  path = Path(mjcf_file)
  if not path.exists():
    raise FileNotFoundError(f"MJCF file not found: {path}")
  return mujoco.MjModel.from_xml_path(str(path))


class ControlNoise:
  """Ornstein-Uhlenbeck noise on top of the actuator commands.

  ``rate`` is the correlation time in seconds; the stationary standard
  deviation is ``std`` for any rate.
  """

  def __init__(self, nu: int, std: float, rate: float, timestep: float, seed: int = 0):
    self.std = float(std)
    self.decay = math.exp(-timestep / max(1e-10, rate))
    self.scale = self.std * math.sqrt(1.0 - self.decay * self.decay)
    self.generator = torch.Generator().manual_seed(seed)
    self.state = torch.zeros((nu,), dtype=torch.float64)

  @property
  def enabled(self) -> bool:
    return self.std > 0.0 and self.state.numel() > 0

  def reset(self) -> None:
    self.state.zero_()

  def sample(self) -> torch.Tensor:
    noise = torch.randn(self.state.shape, generator=self.generator, dtype=torch.float64)
    self.state = self.decay * self.state + self.scale * noise
    return self.state

  def apply(self, data: mujoco.MjData) -> None:
    if not self.enabled:
      return
    data.ctrl[:] += self.sample().numpy()


class NativeMujocoClient:
  """Headless MuJoCo rollout driving a :class:`PolicyController`.

  Inference is awaited once per control tick; the substeps in between reuse
  the last control target.
  """

  def __init__(
    self,
    cfg: NativeSim2SimConfig,
    *,
    model: mujoco.MjModel | None = None,
    controller: PolicyController | None = None,
  ):
    self.cfg = cfg
    self.model = model if model is not None else load_model(cfg.mjcf_file)
    self.data = mujoco.MjData(self.model)
    self.ctx = SimContext(self.model, self.data, device=cfg.policy.device)
    self.controller = controller if controller is not None else PolicyController(cfg.policy)

    self.decimation = self.controller.decimation_for(self.ctx.timestep)
    self.step_dt = self.ctx.timestep * self.decimation
    self.num_steps = cfg.num_steps
    self.auto_forward_zones = cfg.resolved_auto_forward_zones()
    self.video_path = self._resolve_default_video_path(cfg.video_file) if cfg.video else None

    self._key_id = -1
    if cfg.keyframe:
      self._key_id = mujoco.mj_name2id(self.model, mujoco.mjtObj.mjOBJ_KEY, cfg.keyframe)
    self._depth_renderer: mujoco.Renderer | None = None
    self._video_renderer: mujoco.Renderer | None = None
    self._video_frames: list[Any] = []
    self.inference_errors = 0
    self.ctrl_noise = ControlNoise(
      self.model.nu,
      cfg.ctrl_noise_std,
      cfg.ctrl_noise_rate,
      self.ctx.timestep,
      seed=cfg.ctrl_noise_seed,
    )

  def _resolve_default_video_path(self, video_file: str | None) -> Path:
    if video_file is not None:
      return Path(video_file)
    policy_path = Path(self.cfg.policy.policy_file).resolve()
    return policy_path.parent / "videos" / "sim2sim" / f"sim2sim_{policy_path.stem}.mp4"

  def rollout_description(self) -> str:
    return (
      "[INFO] Native sim2sim client: "
      f"model={self.cfg.mjcf_file}, steps={self.num_steps}, "
      f"decimation={self.decimation}, step_dt={self.step_dt:.6f}, "
      f"device={self.ctx.device}\n"
      f"[INFO] Sim2sim video path: {self.video_path}"
    )

  def _reset_to_keyframe(self) -> None:
    if self._key_id >= 0:
      mujoco.mj_resetDataKeyframe(self.model, self.data, self._key_id)
    else:
      mujoco.mj_resetData(self.model, self.data)

  def _write_default_pose(self) -> None:
    metadata = self.controller.metadata
    assert metadata is not None
    default = metadata.default_joint_pos.cpu().numpy()
    for i, binding in enumerate(self.controller.joints):
      if binding.qpos_adr is not None:
        self.data.qpos[binding.qpos_adr] = default[i]
      if binding.qvel_adr is not None:
        self.data.qvel[binding.qvel_adr] = 0.0

  def reset_native_state(self) -> None:
    self._reset_to_keyframe()
    if self.controller.metadata is None:
      self.controller.init(self.ctx)
    else:
      self.controller.reset()
    if self.cfg.init_default_pose:
      self._write_default_pose()
    self.data.ctrl[:] = 0.0
    mujoco.mj_forward(self.model, self.data)

  def _make_depth_renderer(self) -> mujoco.Renderer | None:
    if not self.controller.depth.available:
      return None
    cam_id = mujoco.mj_name2id(self.model, mujoco.mjtObj.mjOBJ_CAMERA, self.cfg.depth_camera)
    if cam_id < 0:
      print(f"[WARN] Depth camera '{self.cfg.depth_camera}' not found; depth features disabled.")
      return None
    if not _has_render_backend():
      print("[WARN] No rendering backend for depth (set MUJOCO_GL=egl); depth features disabled.")
      return None
    try:
      renderer = mujoco.Renderer(
        self.model, height=self.cfg.depth_height, width=self.cfg.depth_width
      )
    except Exception as exc:
      print(f"[WARN] Failed to create depth renderer; depth features disabled: {exc}")
      return None
    renderer.enable_depth_rendering()
    return renderer

  def _make_video_renderer(self) -> mujoco.Renderer | None:
    if self.video_path is None:
      return None
    if not _has_render_backend():
      raise RuntimeError(
        "Video requested in headless mode, but MUJOCO_GL is not set to a headless "
        "backend. Export MUJOCO_GL=egl (or osmesa) before launching this script."
      )
    try:
      return mujoco.Renderer(
        self.model,
        height=self.cfg.video_height,
        width=self.cfg.video_width,
      )
    except Exception as exc:
      raise RuntimeError(
        "Failed to create MuJoCo renderer for video capture. "
        "Set MUJOCO_GL=egl (or osmesa) and ensure the backend is available."
      ) from exc

  def reset_rollout(self) -> None:
    self.reset_native_state()
    commands = self.controller.commands
    commands.set_pressed(self.cfg.command_keys)
    self._update_auto_forward()
    self._close_renderers()
    self._depth_renderer = self._make_depth_renderer()
    self._video_renderer = self._make_video_renderer()
    self._video_frames = []
    self.ctrl_noise.reset()
    self.inference_errors = 0

  def root_x(self) -> float | None:
    root = self.controller.root
    if root is None or root.qpos_adr is None:
      return None
    return float(self.data.qpos[root.qpos_adr])

  def _update_auto_forward(self) -> None:
    if not self.auto_forward_zones:
      return
    x = self.root_x()
    inside = x is not None and any(lo <= x <= hi for lo, hi in self.auto_forward_zones)
    if inside != self.controller.commands.auto_forward:
      self.controller.set_auto_forward(inside)

  def render_depth(self) -> np.ndarray | None:
    if self._depth_renderer is None:
      return None
    self._depth_renderer.update_scene(self.data, camera=self.cfg.depth_camera)
    depth = self._depth_renderer.render()
    # Renderer rows are top-down; depth frames are stored bottom-up.
    return np.flipud(np.asarray(depth, dtype=np.float32)).copy()

  async def step_control(self) -> None:
    """One control tick: perception, inference, then ``decimation`` substeps."""
    depth = self.render_depth()
    if depth is not None:
      self.controller.set_depth_image(depth, depth.shape[1], depth.shape[0])
    self._update_auto_forward()

    try:
      await self.controller.request_action(self.ctx)
    except Exception as exc:
      self.inference_errors += 1
      print(f"[ERROR] Policy inference error: {exc}")

    for _ in range(self.decimation):
      if self.ctrl_noise.enabled:
        # Noise is added to this substep's commands only.
        self.data.ctrl[:] = 0.0
      self.controller.apply_control(self.ctx)
      self.ctrl_noise.apply(self.data)
      mujoco.mj_step(self.model, self.data)
    self.maybe_capture_frame()

  async def run(self) -> None:
    for _ in range(self.num_steps):
      await self.step_control()

  def maybe_capture_frame(self) -> None:
    if self._video_renderer is None:
      return
    if self.cfg.camera is None:
      self._video_renderer.update_scene(self.data)
    else:
      self._video_renderer.update_scene(self.data, camera=self.cfg.camera)
    self._video_frames.append(self._video_renderer.render())

  def _close_renderers(self) -> None:
    for renderer in (self._depth_renderer, self._video_renderer):
      if renderer is not None:
        renderer.close()
    self._depth_renderer = None
    self._video_renderer = None

  def finish_rollout(self, success: bool) -> None:
    if self._video_renderer is not None and len(self._video_frames) > 0:
      assert self.video_path is not None
      video_path = self.video_path
      video_path.parent.mkdir(parents=True, exist_ok=True)
      fps = self.cfg.video_fps or max(1, int(round(1.0 / self.step_dt)))
      media.write_video(str(video_path), self._video_frames, fps=fps)
      print(f"[INFO] Saved native sim2sim video: {video_path} (fps={fps})")
    self._close_renderers()
    self._video_frames = []
    if not success:
      print("[WARN] Native sim2sim rollout did not complete.")
