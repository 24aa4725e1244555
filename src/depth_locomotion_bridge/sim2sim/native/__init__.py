from depth_locomotion_bridge.sim2sim.native.client import NativeMujocoClient as NativeMujocoClient
from depth_locomotion_bridge.sim2sim.native.config import NativeSim2SimConfig as NativeSim2SimConfig
from depth_locomotion_bridge.sim2sim.native.controller import PolicyController as PolicyController
from depth_locomotion_bridge.sim2sim.native.runner import (
  NativeMujocoSim2SimRunner as NativeMujocoSim2SimRunner,
)
from depth_locomotion_bridge.sim2sim.native.runner import (
  run_native_sim2sim as run_native_sim2sim,
)
from depth_locomotion_bridge.sim2sim.native.state import SimContext as SimContext
