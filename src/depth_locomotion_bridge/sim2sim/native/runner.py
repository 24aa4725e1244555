from __future__ import annotations

import asyncio

import torch

from depth_locomotion_bridge.sim2sim.native.client import NativeMujocoClient
from depth_locomotion_bridge.sim2sim.native.config import NativeSim2SimConfig


class NativeMujocoSim2SimRunner:
  """Drives one rollout of the depth locomotion policy in native MuJoCo.

  Controller responsibilities:
  - metadata resolution and joint binding
  - observation assembly, depth features and policy inference
  - PD torques written into ``data.ctrl``

  Client responsibilities:
  - MuJoCo model loading, reset and physics stepping
  - depth rendering and command scripting
  - local video capture
  """

  def __init__(self, cfg: NativeSim2SimConfig, client: NativeMujocoClient | None = None):
    self.cfg = cfg
    self.client = client if client is not None else NativeMujocoClient(cfg)

  def rollout_description(self) -> str:
    controller = self.client.controller
    depth_mode = "on" if controller.depth.available else "off (zero features)"
    return (
      f"{self.client.rollout_description()}\n"
      f"[INFO] Policy: {self.cfg.policy.policy_file} (depth backbone {depth_mode})"
    )

  async def run_async(self) -> None:
    print(self.rollout_description())
    success = False
    try:
      self.client.reset_rollout()
      with torch.no_grad():
        await self.client.run()
      success = True
    finally:
      self.client.finish_rollout(success=success)
      if success:
        print(
          "[INFO] Native sim2sim rollout completed "
          f"({self.client.inference_errors} inference errors)."
        )

  def run(self) -> None:
    asyncio.run(self.run_async())


def run_native_sim2sim(cfg: NativeSim2SimConfig) -> None:
  runner = NativeMujocoSim2SimRunner(cfg)
  runner.run()
