import asyncio

import numpy as np
import pytest
import torch

from conftest import POLICY_METADATA, POLICY_OBS_DIM, FakeRuntime, constant_action
from depth_locomotion_bridge.policy_server.config import DepthConfig, PolicyControllerConfig
from depth_locomotion_bridge.policy_server.wire import encode_model_metadata
from depth_locomotion_bridge.sim2sim.native.controller import PolicyController, decimation_for


def test_request_updates_target_and_previous_action(controller, policy_runtime, ctx):
  assert asyncio.run(controller.request_action(ctx)) is True

  assert torch.allclose(controller.target, torch.tensor([0.6, 0.8, 1.8, 2.0]))
  assert controller.observations.prev_action.tolist() == [1.0, 2.0, 3.0, 4.0]
  assert not controller.in_flight

  feeds = policy_runtime.calls[0]
  assert set(feeds) == {"obs"}
  assert feeds["obs"].shape == (1, POLICY_OBS_DIM + 32)
  assert np.all(feeds["obs"][0, POLICY_OBS_DIM:] == 0.0)


def test_previous_action_feeds_next_observation(controller, policy_runtime, ctx):
  asyncio.run(controller.request_action(ctx))
  asyncio.run(controller.request_action(ctx))
  second = policy_runtime.calls[1]["obs"][0]
  actions = controller.observations.layout[-1][1]
  assert second[actions].tolist() == [1.0, 2.0, 3.0, 4.0]


def test_time_step_input_is_fed_when_declared(controller_cfg, ctx):
  runtime = FakeRuntime(
    input_names=("time_step", "obs"),
    output_names=("value", "actions"),
    metadata=POLICY_METADATA,
    outputs_fn=lambda feeds: [np.zeros((1, 1)), np.ones((1, 4), dtype=np.float32)],
  )
  controller = PolicyController(controller_cfg, policy_runtime=runtime)
  controller.init(ctx)
  asyncio.run(controller.request_action(ctx))

  feeds = runtime.calls[0]
  assert feeds["time_step"].shape == (1, 1)
  assert feeds["obs"].shape == (1, POLICY_OBS_DIM + 32)
  # "actions" output is selected over output 0.
  assert torch.allclose(controller.target, torch.tensor([0.6, 0.3, 0.8, 0.5]))


def test_action_length_mismatch_keeps_target(controller_cfg, ctx):
  runtime = FakeRuntime(metadata=POLICY_METADATA, outputs_fn=constant_action([1.0, 2.0]))
  controller = PolicyController(controller_cfg, policy_runtime=runtime)
  controller.init(ctx)
  before = controller.target.clone()

  with pytest.raises(ValueError, match="does not match joint count 4"):
    asyncio.run(controller.request_action(ctx))

  assert torch.equal(controller.target, before)
  assert not controller.in_flight


def test_request_while_in_flight_is_dropped(controller, policy_runtime, ctx):
  before = controller.target.clone()
  controller.scheduler.in_flight = True

  assert asyncio.run(controller.request_action(ctx)) is False

  assert torch.equal(controller.target, before)
  assert policy_runtime.calls == []


def test_overlapping_requests_keep_single_slot(controller, policy_runtime, ctx):
  async def scenario():
    policy_runtime.gate = asyncio.Event()
    first = asyncio.create_task(controller.request_action(ctx))
    await asyncio.sleep(0)
    assert controller.in_flight
    dropped = await controller.request_action(ctx)
    policy_runtime.gate.set()
    return await first, dropped

  completed, dropped = asyncio.run(scenario())
  assert completed is True
  assert dropped is False
  assert len(policy_runtime.calls) == 1


def test_not_ready_before_init(controller_cfg, policy_runtime, ctx):
  controller = PolicyController(controller_cfg, policy_runtime=policy_runtime)
  assert not controller.is_ready
  assert asyncio.run(controller.request_action(ctx)) is False
  assert controller.apply_control(ctx) is None


def test_reset_restores_session_state(controller, ctx):
  controller.commands.press("left")
  asyncio.run(controller.request_action(ctx))
  controller.reset()
  assert torch.allclose(controller.target, torch.tensor([0.1, -0.2, 0.3, 0.0]))
  assert torch.equal(controller.observations.prev_action, torch.zeros(4))
  assert controller.commands.command_index == 0
  assert len(controller.depth.queue) == 0


def test_metadata_read_from_model_bytes(controller_cfg, ctx):
  runtime = FakeRuntime(
    metadata={},
    model_bytes=encode_model_metadata(POLICY_METADATA),
    outputs_fn=constant_action([0.0] * 4),
  )
  controller = PolicyController(controller_cfg, policy_runtime=runtime)
  controller.init(ctx)
  assert controller.metadata.num_joints == 4


def test_depth_feature_reaches_policy_after_latency(ctx):
  depth_runtime = FakeRuntime(
    input_names=("depth",),
    output_names=("latent",),
    outputs_fn=lambda feeds: [np.full((1, 32), 0.75, dtype=np.float32)],
  )
  policy_runtime = FakeRuntime(metadata=POLICY_METADATA, outputs_fn=constant_action([0.0] * 4))
  cfg = PolicyControllerConfig(
    policy_file="tiny_biped_student.onnx", depth=DepthConfig(latency_steps=2)
  )
  controller = PolicyController(cfg, policy_runtime=policy_runtime, depth_runtime=depth_runtime)
  controller.init(ctx)
  controller.set_depth_image(np.full(106 * 60, 1.0, dtype=np.float32), 106, 60)

  for _ in range(3):
    asyncio.run(controller.request_action(ctx))

  assert len(depth_runtime.calls) == 3
  assert depth_runtime.calls[0]["depth"].shape == (1, 58, 87)
  assert np.allclose(policy_runtime.calls[-1]["obs"][0, POLICY_OBS_DIM:], 0.75)
  assert controller.processed_depth_preview().shape == (58, 87)


def test_missing_depth_backbone_falls_back_to_zeros(policy_runtime, ctx, capsys):
  cfg = PolicyControllerConfig(policy_file="/nonexistent/run_student.onnx")
  assert cfg.resolve_depth_model_path() == "/nonexistent/run_depth_backbone.onnx"
  controller = PolicyController(cfg, policy_runtime=policy_runtime)
  assert not controller.depth.available
  assert "[WARN] Depth backbone not available" in capsys.readouterr().out


@pytest.mark.parametrize(
  "control_dt, timestep, expected",
  [(0.02, 0.005, 4), (0.02, 0.002, 10), (0.02, 0.05, 1), (0.02, 0.0066, 3)],
)
def test_decimation(control_dt, timestep, expected):
  assert decimation_for(control_dt, timestep) == expected


def test_rebuild_rebinds_onto_new_model(controller, fixed_base_ctx, ctx):
  asyncio.run(controller.request_action(ctx))
  assert not torch.allclose(controller.target, torch.tensor([0.1, -0.2, 0.3, 0.0]))

  controller.rebuild(fixed_base_ctx)

  by_name = {b.name: b for b in controller.joints}
  assert by_name["waist_joint"].qpos_adr == 0
  assert by_name["waist_joint"].ctrl_index == 0
  assert not by_name["left_hip"].resolved
  assert controller.root.qpos_adr is None
  assert torch.allclose(controller.target, torch.tensor([0.1, -0.2, 0.3, 0.0]))
  assert torch.equal(controller.observations.prev_action, torch.zeros(4))

  # waist torque 40 * (0.1 - 0) is clamped to the new model's [-1, 1].
  controller.apply_control(fixed_base_ctx)
  assert fixed_base_ctx.data.ctrl.tolist() == [1.0]
  assert asyncio.run(controller.request_action(fixed_base_ctx)) is True
