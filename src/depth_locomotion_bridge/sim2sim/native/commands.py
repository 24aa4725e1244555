from __future__ import annotations

from typing import Iterable

import torch

from depth_locomotion_bridge.policy_server.metadata import COMMAND_VECTOR_DIM

DIRECTION_KEYS = ("forward", "left", "right", "turn_left", "turn_right")

IDLE = 0
FORWARD = 1
FORWARD_LEFT = 2
LEFT = 3
FORWARD_RIGHT = 4
RIGHT = 5
HIGH_SPEED_OFFSET = 5


def resolve_command_index(
  pressed: Iterable[str],
  *,
  auto_forward: bool = False,
  high_speed: bool = True,
) -> int:
  keys = set(pressed)
  forward = "forward" in keys or auto_forward
  left = "left" in keys
  right = "right" in keys

  if (forward and left) or "turn_left" in keys:
    base = FORWARD_LEFT
  elif (forward and right) or "turn_right" in keys:
    base = FORWARD_RIGHT
  elif forward:
    base = FORWARD
  elif left:
    base = LEFT
  elif right:
    base = RIGHT
  else:
    base = IDLE

  if base != IDLE and high_speed:
    return base + HIGH_SPEED_OFFSET
  return base


class CommandStateMachine:
  """Turns held direction keys into the one-hot locomotion command."""

  def __init__(self, high_speed: bool = True, device: str = "cpu"):
    self.device = device
    self.high_speed = high_speed
    self.auto_forward = False
    self._pressed: set[str] = set()
    self.state = torch.zeros((COMMAND_VECTOR_DIM,), device=device)
    self.update()

  @property
  def command_index(self) -> int:
    return int(torch.argmax(self.state).item())

  def press(self, key: str) -> None:
    if key not in DIRECTION_KEYS:
      raise KeyError(f"Unknown direction key '{key}'. Expected one of {DIRECTION_KEYS}.")
    self._pressed.add(key)
    self.update()

  def release(self, key: str) -> None:
    self._pressed.discard(key)
    self.update()

  def clear(self) -> None:
    self._pressed.clear()
    self.update()

  def set_pressed(self, keys: Iterable[str]) -> None:
    self._pressed.clear()
    for key in keys:
      self.press(key)
    self.update()

  def toggle_speed(self) -> None:
    self.high_speed = not self.high_speed
    self.update()

  def set_auto_forward(self, enabled: bool) -> None:
    self.auto_forward = bool(enabled)
    self.update()

  def update(self) -> torch.Tensor:
    idx = resolve_command_index(
      self._pressed, auto_forward=self.auto_forward, high_speed=self.high_speed
    )
    state = torch.zeros((COMMAND_VECTOR_DIM,), device=self.device)
    state[idx] = 1.0
    self.state = state
    return state

  def reset(self) -> None:
    state = torch.zeros((COMMAND_VECTOR_DIM,), device=self.device)
    state[IDLE] = 1.0
    self.state = state
