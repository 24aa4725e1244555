import pytest

from depth_locomotion_bridge.policy_server.wire import (
  decode_metadata_entry,
  decode_model_metadata,
  encode_metadata_entry,
  encode_model_metadata,
)


def _fake_model_bytes(metadata: dict[str, str]) -> bytes:
  # ir_version (field 1, varint), producer_name (field 2), then metadata_props.
  header = bytes([0x08, 0x08]) + bytes([0x12, 0x04]) + b"test"
  # opset_import-like fixed32 field (field 9, wire type 5).
  fixed = bytes([(9 << 3) | 5, 1, 2, 3, 4])
  return header + fixed + encode_model_metadata(metadata)


def test_entry_roundtrip_keeps_commas():
  key, value = decode_metadata_entry(encode_metadata_entry("joint_names", "a,b,c"))
  assert key == "joint_names"
  assert value == "a,b,c"


def test_model_scan_skips_unrelated_fields():
  meta = {"joint_names": "a,b,c", "action_scale": "0.25"}
  assert decode_model_metadata(_fake_model_bytes(meta)) == meta


def test_model_scan_without_metadata_is_empty():
  assert decode_model_metadata(bytes([0x08, 0x07])) == {}


def test_truncated_varint_raises():
  with pytest.raises(ValueError, match="Truncated varint"):
    decode_model_metadata(bytes([0x08, 0x80]))


def test_length_overrun_raises():
  payload = encode_model_metadata({"k": "v"})
  with pytest.raises(ValueError, match="overruns"):
    decode_model_metadata(payload[:-1])


def test_unsupported_wire_type_raises():
  # Field 3 with wire type 3 (deprecated start-group).
  with pytest.raises(ValueError, match="Unsupported protobuf wire type"):
    decode_model_metadata(bytes([(3 << 3) | 3, 0x00]))
