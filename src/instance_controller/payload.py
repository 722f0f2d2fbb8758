"""Protobuf payloads for instance lifecycle events.

The message types live in ``cow/instance/v1/instance.proto``; the file is
described here and registered in the default descriptor pool at import time,
the same way generated ``_pb2`` modules do it.

Opaque application payloads (instance state, player metadata) are JSON blobs
that are transcoded into ``google.protobuf.Struct``. The transcode validates:
bad input fails with PayloadError while the event is being built, never at
delivery time.
"""

from __future__ import annotations

import json
import math
from typing import Any, Dict, Optional, Union

from google.protobuf import descriptor_pb2, descriptor_pool, json_format, message_factory, struct_pb2

from instance_controller.resources import Instance, InstanceState

PACKAGE = "cow.instance.v1"
MAX_DEPTH = 32
# largest integer a double holds exactly
MAX_EXACT_INT = 2**53

_F = descriptor_pb2.FieldDescriptorProto

STATE_NAMES = ["STATE_UNKNOWN", "STATE_INITIALIZING", "STATE_RUNNING", "STATE_ENDING"]


class PayloadError(ValueError):
    pass


def _field(name, number, ftype, type_name="", repeated=False):
    label = _F.LABEL_REPEATED if repeated else _F.LABEL_OPTIONAL
    f = _F(name=name, number=number, type=ftype, label=label)
    if type_name:
        f.type_name = type_name
    return f


def _file_descriptor_proto() -> descriptor_pb2.FileDescriptorProto:
    struct_type = ".google.protobuf.Struct"
    fdp = descriptor_pb2.FileDescriptorProto(
        name="cow/instance/v1/instance.proto",
        package=PACKAGE,
        syntax="proto3",
        dependency=["google/protobuf/struct.proto"],
    )

    player = fdp.message_type.add(name="Player")
    player.field.extend([
        _field("id", 1, _F.TYPE_STRING),
        _field("metadata", 2, _F.TYPE_MESSAGE, struct_type),
    ])

    metadata = fdp.message_type.add(name="Metadata")
    metadata.field.extend([
        _field("state", 1, _F.TYPE_MESSAGE, struct_type),
        _field("players", 2, _F.TYPE_MESSAGE, f".{PACKAGE}.Player", repeated=True),
    ])

    instance = fdp.message_type.add(name="Instance")
    state_enum = instance.enum_type.add(name="State")
    for number, name in enumerate(STATE_NAMES):
        state_enum.value.add(name=name, number=number)
    instance.field.extend([
        _field("id", 1, _F.TYPE_STRING),
        _field("name", 2, _F.TYPE_STRING),
        _field("ip", 3, _F.TYPE_STRING),
        _field("state", 4, _F.TYPE_ENUM, f".{PACKAGE}.Instance.State"),
        _field("metadata", 5, _F.TYPE_MESSAGE, f".{PACKAGE}.Metadata"),
    ])

    for event in ("InstanceStartedEvent", "InstanceEndedEvent"):
        msg = fdp.message_type.add(name=event)
        msg.field.append(_field("instance", 1, _F.TYPE_MESSAGE, f".{PACKAGE}.Instance"))

    changed = fdp.message_type.add(name="InstanceStateChangedEvent")
    changed.field.extend([
        _field("instance", 1, _F.TYPE_MESSAGE, f".{PACKAGE}.Instance"),
        _field("old_state", 2, _F.TYPE_MESSAGE, struct_type),
        _field("new_state", 3, _F.TYPE_MESSAGE, struct_type),
    ])
    return fdp


# struct.proto must already be in the default pool; importing struct_pb2 does that.
DESCRIPTOR = descriptor_pool.Default().AddSerializedFile(
    _file_descriptor_proto().SerializeToString()
)

PlayerProto = message_factory.GetMessageClass(DESCRIPTOR.message_types_by_name["Player"])
MetadataProto = message_factory.GetMessageClass(DESCRIPTOR.message_types_by_name["Metadata"])
InstanceProto = message_factory.GetMessageClass(DESCRIPTOR.message_types_by_name["Instance"])
InstanceStartedEvent = message_factory.GetMessageClass(
    DESCRIPTOR.message_types_by_name["InstanceStartedEvent"]
)
InstanceEndedEvent = message_factory.GetMessageClass(
    DESCRIPTOR.message_types_by_name["InstanceEndedEvent"]
)
InstanceStateChangedEvent = message_factory.GetMessageClass(
    DESCRIPTOR.message_types_by_name["InstanceStateChangedEvent"]
)

_STATE_ENUM = DESCRIPTOR.message_types_by_name["Instance"].enum_types_by_name["State"]
_API_STATES = {
    InstanceState.INITIALIZING.value: _STATE_ENUM.values_by_name["STATE_INITIALIZING"].number,
    InstanceState.RUNNING.value: _STATE_ENUM.values_by_name["STATE_RUNNING"].number,
    InstanceState.ENDING.value: _STATE_ENUM.values_by_name["STATE_ENDING"].number,
}


def api_state(state: str) -> int:
    return _API_STATES.get(state, _STATE_ENUM.values_by_name["STATE_UNKNOWN"].number)


def _reject_constant(name: str) -> Any:
    raise PayloadError(f"non-finite number {name} is not valid JSON")


def decode_json(raw: Optional[Union[str, bytes, bytearray]]) -> Any:
    """Decode an opaque JSON blob; empty input decodes to an empty object."""
    if raw is None:
        return {}
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise PayloadError(f"payload is not valid UTF-8: {e}") from e
    if not raw.strip():
        return {}
    try:
        return json.loads(raw, parse_constant=_reject_constant)
    except json.JSONDecodeError as e:
        raise PayloadError(f"payload is not valid JSON: {e}") from e


def to_value(obj: Any, depth: int = 0) -> struct_pb2.Value:
    """Convert a decoded JSON value into the protobuf Value tagged union."""
    if depth > MAX_DEPTH:
        raise PayloadError(f"payload nesting exceeds {MAX_DEPTH} levels")

    value = struct_pb2.Value()
    if obj is None:
        value.null_value = struct_pb2.NULL_VALUE
    elif isinstance(obj, bool):
        value.bool_value = obj
    elif isinstance(obj, int):
        if abs(obj) > MAX_EXACT_INT:
            raise PayloadError(f"integer {obj} cannot be represented exactly")
        value.number_value = float(obj)
    elif isinstance(obj, float):
        if not math.isfinite(obj):
            raise PayloadError(f"non-finite number {obj} is not valid JSON")
        value.number_value = obj
    elif isinstance(obj, str):
        value.string_value = obj
    elif isinstance(obj, list):
        value.list_value.SetInParent()
        for item in obj:
            value.list_value.values.add().CopyFrom(to_value(item, depth + 1))
    elif isinstance(obj, dict):
        value.struct_value.SetInParent()
        for key, item in obj.items():
            value.struct_value.fields[str(key)].CopyFrom(to_value(item, depth + 1))
    else:
        raise PayloadError(f"unsupported payload type {type(obj).__name__}")
    return value


def to_struct(raw: Any) -> struct_pb2.Struct:
    """Struct for an opaque value, given either as JSON text or already decoded."""
    data = decode_json(raw) if raw is None or isinstance(raw, (str, bytes, bytearray)) else raw
    if not isinstance(data, dict):
        raise PayloadError(f"payload must be a JSON object, got {type(data).__name__}")
    struct = struct_pb2.Struct()
    for key, item in data.items():
        struct.fields[key].CopyFrom(to_value(item, depth=1))
    return struct


def from_struct(struct: struct_pb2.Struct) -> Dict[str, Any]:
    return json_format.MessageToDict(struct)


def instance_to_proto(instance: Instance):
    """Lossless projection of an Instance into the wire schema."""
    msg = InstanceProto(
        id=instance.status.id,
        name=instance.name,
        ip=instance.status.ip,
        state=api_state(instance.status.state),
    )
    msg.metadata.state.CopyFrom(to_struct(instance.status.metadata.state))
    for player in instance.status.metadata.players:
        api_player = msg.metadata.players.add(id=player.id)
        api_player.metadata.CopyFrom(to_struct(player.metadata))
    return msg
