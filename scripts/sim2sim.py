"""Run a depth locomotion policy in native MuJoCo with PD torque control."""

import sys

import tyro

from depth_locomotion_bridge.sim2sim import NativeSim2SimConfig, run_native_sim2sim


def main():
  args = tyro.cli(
    NativeSim2SimConfig,
    args=sys.argv[1:],
    prog=sys.argv[0],
    config=(
      tyro.conf.AvoidSubcommands,
      tyro.conf.FlagConversionOff,
    ),
  )
  run_native_sim2sim(args)


if __name__ == "__main__":
  main()
