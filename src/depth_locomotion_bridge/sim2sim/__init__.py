from depth_locomotion_bridge.sim2sim.native import NativeSim2SimConfig as NativeSim2SimConfig
from depth_locomotion_bridge.sim2sim.native import PolicyController as PolicyController
from depth_locomotion_bridge.sim2sim.native import run_native_sim2sim as run_native_sim2sim
