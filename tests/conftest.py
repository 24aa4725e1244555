"""Shared fixtures: a tiny floating-base MJCF robot and a fake async policy runtime."""

from __future__ import annotations

import asyncio
from typing import Callable

import mujoco
import numpy as np
import pytest

from depth_locomotion_bridge.policy_server.config import DepthConfig, PolicyControllerConfig
from depth_locomotion_bridge.sim2sim.native.controller import PolicyController
from depth_locomotion_bridge.sim2sim.native.state import SimContext

ROBOT_XML = """
<mujoco model="tiny_biped">
  <option timestep="0.005"/>
  <worldbody>
    <geom name="floor" type="plane" size="20 20 0.1"/>
    <body name="pelvis" pos="0 0 1">
      <freejoint name="root"/>
      <geom type="box" size="0.1 0.1 0.05" mass="5"/>
      <body name="torso_link" pos="0 0 0.2">
        <joint name="waist_joint" type="hinge" axis="0 0 1"/>
        <geom type="box" size="0.08 0.08 0.1" mass="3"/>
        <camera name="depth_camera" pos="0.1 0 0.1" xyaxes="0 -1 0 0.5 0 1"/>
      </body>
      <body name="left_leg" pos="0 0.1 -0.1">
        <joint name="left_hip" type="hinge" axis="0 1 0"/>
        <geom type="capsule" fromto="0 0 0 0 0 -0.4" size="0.03" mass="1"/>
      </body>
      <body name="right_leg" pos="0 -0.1 -0.1">
        <joint name="right_hip" type="hinge" axis="0 1 0"/>
        <geom type="capsule" fromto="0 0 0 0 0 -0.4" size="0.03" mass="1"/>
      </body>
    </body>
  </worldbody>
  <actuator>
    <motor name="waist_motor" joint="waist_joint" ctrlrange="-5 5"/>
    <motor name="waist_motor_dup" joint="waist_joint" ctrlrange="-1 1"/>
    <motor name="left_hip_motor" joint="left_hip"/>
  </actuator>
  <keyframe>
    <key name="home" qpos="0 0 1 1 0 0 0 0 0 0"/>
  </keyframe>
</mujoco>
"""

FIXED_BASE_XML = """
<mujoco model="fixed_waist">
  <option timestep="0.005"/>
  <worldbody>
    <body name="base" pos="0 0 0.5">
      <geom type="box" size="0.1 0.1 0.1" mass="2"/>
      <body name="torso_link" pos="0 0 0.2">
        <joint name="waist_joint" type="hinge" axis="0 0 1"/>
        <geom type="box" size="0.05 0.05 0.1" mass="1"/>
      </body>
    </body>
  </worldbody>
  <actuator>
    <motor name="waist_motor" joint="waist_joint" ctrlrange="-1 1"/>
  </actuator>
</mujoco>
"""

JOINT_NAMES = ("waist_joint", "left_hip", "right_hip", "missing_joint")

POLICY_METADATA = {
  "joint_names": ",".join(JOINT_NAMES),
  "observation_names": (
    "base_ang_vel,projected_gravity,placeholder,command,joint_pos,joint_vel,actions"
  ),
  "action_scale": "0.5",
  "default_joint_pos": "0.1,-0.2,0.3,0.0",
  "joint_stiffness": "40,30,30,30",
  "joint_damping": "2,1,1,1",
}

# 3 + 3 + 15 + 3 + 4 + 4 + 4
POLICY_OBS_DIM = 36


class FakeRuntime:
  """In-memory stand-in for ``OnnxInferenceRuntime``."""

  def __init__(
    self,
    *,
    input_names: tuple[str, ...] = ("obs",),
    output_names: tuple[str, ...] = ("actions",),
    metadata: dict[str, str] | None = None,
    input_shapes: dict[str, tuple[int | None, ...]] | None = None,
    outputs_fn: Callable[[dict[str, np.ndarray]], list[np.ndarray]] | None = None,
    model_bytes: bytes | None = None,
  ):
    self.input_names = input_names
    self.output_names = output_names
    self.metadata = dict(metadata or {})
    self.input_shapes = dict(input_shapes or {})
    self.outputs_fn = outputs_fn
    self.model_bytes = model_bytes
    self.calls: list[dict[str, np.ndarray]] = []
    self.gate: asyncio.Event | None = None

  def input_shape(self, name: str):
    return self.input_shapes.get(name)

  def custom_metadata(self) -> dict[str, str]:
    return dict(self.metadata)

  async def run(self, feeds):
    self.calls.append({k: np.array(v, copy=True) for k, v in feeds.items()})
    if self.gate is not None:
      await self.gate.wait()
    if self.outputs_fn is None:
      outputs = [np.zeros((1, 4), dtype=np.float32) for _ in self.output_names]
    else:
      outputs = self.outputs_fn(feeds)
    return dict(zip(self.output_names, outputs))


def constant_action(values) -> Callable[[dict[str, np.ndarray]], list[np.ndarray]]:
  action = np.asarray(values, dtype=np.float32).reshape(1, -1)
  return lambda feeds: [action]


@pytest.fixture
def mj_model() -> mujoco.MjModel:
  return mujoco.MjModel.from_xml_string(ROBOT_XML)


@pytest.fixture
def ctx(mj_model) -> SimContext:
  data = mujoco.MjData(mj_model)
  key_id = mujoco.mj_name2id(mj_model, mujoco.mjtObj.mjOBJ_KEY, "home")
  mujoco.mj_resetDataKeyframe(mj_model, data, key_id)
  mujoco.mj_forward(mj_model, data)
  return SimContext(mj_model, data, device="cpu")


@pytest.fixture
def fixed_base_ctx() -> SimContext:
  model = mujoco.MjModel.from_xml_string(FIXED_BASE_XML)
  data = mujoco.MjData(model)
  mujoco.mj_forward(model, data)
  return SimContext(model, data, device="cpu")


@pytest.fixture
def policy_runtime() -> FakeRuntime:
  return FakeRuntime(
    metadata=POLICY_METADATA,
    outputs_fn=constant_action([1.0, 2.0, 3.0, 4.0]),
  )


@pytest.fixture
def controller_cfg() -> PolicyControllerConfig:
  return PolicyControllerConfig(
    policy_file="tiny_biped_student.onnx",
    depth=DepthConfig(enabled=False),
  )


@pytest.fixture
def controller(controller_cfg, policy_runtime, ctx) -> PolicyController:
  controller = PolicyController(controller_cfg, policy_runtime=policy_runtime)
  controller.init(ctx)
  return controller
