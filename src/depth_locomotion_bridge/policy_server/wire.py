"""Minimal protobuf wire walker for ONNX ``metadata_props``.

Used when the inference runtime does not expose custom metadata. Only the
subset of the protobuf wire format needed to reach ``ModelProto`` field 14
(``repeated StringStringEntryProto metadata_props``) is implemented.
"""

from __future__ import annotations

_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_LENGTH_DELIMITED = 2
_WIRE_FIXED32 = 5

MODEL_METADATA_PROPS_FIELD = 14
_ENTRY_KEY_FIELD = 1
_ENTRY_VALUE_FIELD = 2


def _read_varint(buf: bytes, offset: int) -> tuple[int, int]:
  result = 0
  shift = 0
  pos = offset
  while pos < len(buf):
    byte = buf[pos]
    pos += 1
    result |= (byte & 0x7F) << shift
    if not byte & 0x80:
      return result, pos
    shift += 7
  raise ValueError(f"Truncated varint at byte offset {offset}.")


def _read_length_delimited(buf: bytes, offset: int) -> tuple[bytes, int]:
  length, start = _read_varint(buf, offset)
  end = start + length
  if end > len(buf):
    raise ValueError(
      f"Length-delimited field at byte offset {offset} overruns buffer "
      f"({end} > {len(buf)})."
    )
  return buf[start:end], end


def _skip_field(buf: bytes, offset: int, wire_type: int) -> int:
  if wire_type == _WIRE_VARINT:
    return _read_varint(buf, offset)[1]
  if wire_type == _WIRE_FIXED64:
    end = offset + 8
  elif wire_type == _WIRE_LENGTH_DELIMITED:
    return _read_length_delimited(buf, offset)[1]
  elif wire_type == _WIRE_FIXED32:
    end = offset + 4
  else:
    raise ValueError(f"Unsupported protobuf wire type {wire_type} at byte offset {offset}.")
  if end > len(buf):
    raise ValueError(f"Fixed-width field at byte offset {offset} overruns buffer.")
  return end


def _iter_fields(buf: bytes):
  offset = 0
  while offset < len(buf):
    tag, offset = _read_varint(buf, offset)
    field_number = tag >> 3
    wire_type = tag & 0x7
    if wire_type == _WIRE_LENGTH_DELIMITED:
      payload, offset = _read_length_delimited(buf, offset)
      yield field_number, wire_type, payload
    else:
      offset = _skip_field(buf, offset, wire_type)
      yield field_number, wire_type, None


def decode_metadata_entry(buf: bytes) -> tuple[str, str]:
  """Decode one ``StringStringEntryProto`` into ``(key, value)``."""
  key = ""
  value = ""
  for field_number, _, payload in _iter_fields(buf):
    if payload is None:
      continue
    text = payload.decode("utf-8")
    if field_number == _ENTRY_KEY_FIELD:
      key = text
    elif field_number == _ENTRY_VALUE_FIELD:
      value = text
  return key, value


def decode_model_metadata(model_bytes: bytes) -> dict[str, str]:
  """Scan serialized ONNX model bytes and return its ``metadata_props`` map.

  Entries with an empty key are dropped; later duplicates win.
  """
  metadata: dict[str, str] = {}
  for field_number, wire_type, payload in _iter_fields(bytes(model_bytes)):
    if field_number != MODEL_METADATA_PROPS_FIELD or wire_type != _WIRE_LENGTH_DELIMITED:
      continue
    assert payload is not None
    key, value = decode_metadata_entry(payload)
    if key:
      metadata[key] = value
  return metadata


def _encode_varint(value: int) -> bytes:
  if value < 0:
    raise ValueError(f"Cannot varint-encode negative value {value}.")
  out = bytearray()
  while True:
    byte = value & 0x7F
    value >>= 7
    if value:
      out.append(byte | 0x80)
    else:
      out.append(byte)
      return bytes(out)


def _encode_length_delimited(field_number: int, payload: bytes) -> bytes:
  tag = (field_number << 3) | _WIRE_LENGTH_DELIMITED
  return _encode_varint(tag) + _encode_varint(len(payload)) + payload


def encode_metadata_entry(key: str, value: str) -> bytes:
  """Encode ``(key, value)`` as a ``StringStringEntryProto`` message body."""
  return _encode_length_delimited(_ENTRY_KEY_FIELD, key.encode("utf-8")) + (
    _encode_length_delimited(_ENTRY_VALUE_FIELD, value.encode("utf-8"))
  )


def encode_model_metadata(metadata: dict[str, str]) -> bytes:
  """Encode a metadata map as the ``metadata_props`` fields of a ``ModelProto``."""
  return b"".join(
    _encode_length_delimited(MODEL_METADATA_PROPS_FIELD, encode_metadata_entry(k, v))
    for k, v in metadata.items()
  )
