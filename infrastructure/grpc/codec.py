"""Schema-driven JSON <-> protobuf conversion.

One converter for every message type: it walks the registry's schema
data and sets/reads fields on dynamic message classes built from the
snapshot's descriptor pool. Type mismatches are reported with the field
path instead of being coerced.

``google.protobuf.*`` well-known types (Timestamp, Struct, wrappers...)
go through ``json_format`` so they keep their canonical JSON mapping.
"""
from __future__ import annotations

import base64
import binascii
import math
import re
from typing import TYPE_CHECKING, Any, Dict

# Populate the default pool with the well-known types
from google.protobuf import (  # noqa: F401
    any_pb2,
    duration_pb2,
    empty_pb2,
    field_mask_pb2,
    struct_pb2,
    timestamp_pb2,
    wrappers_pb2,
)
from google.protobuf import descriptor_pool, json_format, message_factory
from google.protobuf.message import DecodeError, Message

from domain.common.exceptions import SchemaMismatchException
from domain.proto.schema import FieldKind, FieldSchema, MessageSchema

if TYPE_CHECKING:
    from infrastructure.grpc.registry import RegistrySnapshot


WELL_KNOWN_TYPES = frozenset({
    "google.protobuf.Any",
    "google.protobuf.Duration",
    "google.protobuf.FieldMask",
    "google.protobuf.Struct",
    "google.protobuf.Value",
    "google.protobuf.ListValue",
    "google.protobuf.Timestamp",
    "google.protobuf.DoubleValue",
    "google.protobuf.FloatValue",
    "google.protobuf.Int64Value",
    "google.protobuf.UInt64Value",
    "google.protobuf.Int32Value",
    "google.protobuf.UInt32Value",
    "google.protobuf.BoolValue",
    "google.protobuf.StringValue",
    "google.protobuf.BytesValue",
})

_FLOAT_MAX = 3.4028234663852886e38
_SPECIAL_FLOATS = {"NaN": math.nan, "Infinity": math.inf, "-Infinity": -math.inf}
_INT_STRING = re.compile(r"^-?\d+$")


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _type_of(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


class JsonCodec:
    def __init__(self, snapshot: "RegistrySnapshot", *, preserve_field_names: bool = False) -> None:
        self._snapshot = snapshot
        self._preserve = preserve_field_names
        self._classes: Dict[str, type] = {}

    # ------------------------------------------------------------------ classes
    def message_class(self, type_name: str) -> type:
        cls = self._classes.get(type_name)
        if cls is None:
            descriptor = self._snapshot.pool.FindMessageTypeByName(type_name)
            cls = message_factory.GetMessageClass(descriptor)
            self._classes[type_name] = cls
        return cls

    def _schema(self, type_name: str) -> MessageSchema:
        return self._snapshot.messages[type_name]

    @staticmethod
    def _wkt_class(type_name: str) -> type | None:
        if type_name not in WELL_KNOWN_TYPES:
            return None
        try:
            descriptor = descriptor_pool.Default().FindMessageTypeByName(type_name)
        except KeyError:
            return None
        return message_factory.GetMessageClass(descriptor)

    # ------------------------------------------------------------ JSON -> proto
    def to_message(self, type_name: str, value: Any) -> Message:
        msg = self.message_class(type_name)()
        self._fill(msg, self._schema(type_name), value, "")
        return msg

    def encode(self, type_name: str, value: Any) -> bytes:
        return self.to_message(type_name, value).SerializeToString()

    def _fill(self, msg: Message, schema: MessageSchema, value: Any, path: str) -> None:
        if not isinstance(value, dict):
            raise SchemaMismatchException(
                f"expected object for {schema.full_name}, got {_type_of(value)}",
                field=path or None,
            )
        oneofs: Dict[str, str] = {}
        for key, raw in value.items():
            fpath = _join(path, key)
            f = schema.field_by_json_key(key)
            if f is None:
                raise SchemaMismatchException(f"unknown field for {schema.full_name}", field=fpath)
            if raw is None and f.type_name != "google.protobuf.Value":
                continue
            if f.oneof is not None:
                if f.oneof in oneofs:
                    raise SchemaMismatchException(
                        f"oneof '{f.oneof}' already set by '{oneofs[f.oneof]}'", field=fpath
                    )
                oneofs[f.oneof] = key
            self._set_field(msg, f, raw, fpath)

    def _set_field(self, msg: Message, f: FieldSchema, raw: Any, path: str) -> None:
        if f.is_map:
            if not isinstance(raw, dict):
                raise SchemaMismatchException(f"expected object for map, got {_type_of(raw)}", field=path)
            container = getattr(msg, f.name)
            for k, v in raw.items():
                kpath = f"{path}[{k!r}]"
                key = self._map_key(f.map_key, k, kpath)
                if f.map_value.kind is FieldKind.MESSAGE:
                    self._fill_message(container[key], f.map_value, v, kpath)
                else:
                    container[key] = self._scalar(f.map_value, v, kpath)
        elif f.repeated:
            if not isinstance(raw, list):
                raise SchemaMismatchException(f"expected array, got {_type_of(raw)}", field=path)
            container = getattr(msg, f.name)
            for i, item in enumerate(raw):
                ipath = f"{path}[{i}]"
                if f.kind is FieldKind.MESSAGE:
                    self._fill_message(container.add(), f, item, ipath)
                else:
                    container.append(self._scalar(f, item, ipath))
        elif f.kind is FieldKind.MESSAGE:
            self._fill_message(getattr(msg, f.name), f, raw, path)
        else:
            setattr(msg, f.name, self._scalar(f, raw, path))

    def _fill_message(self, target: Message, f: FieldSchema, raw: Any, path: str) -> None:
        target.SetInParent()
        wkt = self._wkt_class(f.type_name)
        if wkt is None:
            self._fill(target, self._schema(f.type_name), raw, path)
            return
        try:
            parsed = json_format.ParseDict(raw, wkt(), descriptor_pool=self._snapshot.pool)
        except json_format.ParseError as exc:
            raise SchemaMismatchException(str(exc), field=path) from exc
        target.MergeFromString(parsed.SerializeToString())

    def _map_key(self, f: FieldSchema, key: str, path: str) -> Any:
        if f.kind is FieldKind.STRING:
            return key
        if f.kind is FieldKind.BOOL:
            if key in ("true", "false"):
                return key == "true"
            raise SchemaMismatchException("map key must be 'true' or 'false'", field=path)
        try:
            number = int(key)
        except ValueError:
            raise SchemaMismatchException(f"map key must be an integer ({f.kind.value})", field=path) from None
        return self._check_range(f.kind, number, path)

    @staticmethod
    def _check_range(kind: FieldKind, number: int, path: str) -> int:
        lo, hi = kind.int_range
        if not lo <= number <= hi:
            raise SchemaMismatchException(f"value {number} out of range for {kind.value}", field=path)
        return number

    def _scalar(self, f: FieldSchema, raw: Any, path: str) -> Any:
        kind = f.kind
        if kind is FieldKind.BOOL:
            if isinstance(raw, bool):
                return raw
        elif kind is FieldKind.STRING:
            if isinstance(raw, str):
                return raw
        elif kind is FieldKind.BYTES:
            if isinstance(raw, str):
                try:
                    padded = raw + "=" * (-len(raw) % 4)
                    return base64.b64decode(padded.replace("-", "+").replace("_", "/"), validate=True)
                except (binascii.Error, ValueError):
                    raise SchemaMismatchException("invalid base64 for bytes field", field=path) from None
        elif kind is FieldKind.ENUM:
            enum = self._snapshot.enums[f.type_name]
            if isinstance(raw, str):
                if raw in enum.values:
                    return enum.values[raw]
                allowed = ", ".join(enum.values)
                raise SchemaMismatchException(
                    f"unknown value '{raw}' for enum {enum.full_name} (allowed: {allowed})", field=path
                )
            if isinstance(raw, int) and not isinstance(raw, bool):
                return self._check_range(FieldKind.INT32, raw, path)
        elif kind.is_integer:
            if isinstance(raw, bool):
                pass
            elif isinstance(raw, int):
                return self._check_range(kind, raw, path)
            elif isinstance(raw, float) and raw.is_integer():
                return self._check_range(kind, int(raw), path)
            elif isinstance(raw, str) and kind.is_64bit and _INT_STRING.match(raw):
                # proto3 JSON carries 64-bit integers as strings
                return self._check_range(kind, int(raw), path)
        elif kind in (FieldKind.FLOAT, FieldKind.DOUBLE):
            if isinstance(raw, str) and raw in _SPECIAL_FLOATS:
                return _SPECIAL_FLOATS[raw]
            if isinstance(raw, (int, float)) and not isinstance(raw, bool):
                number = float(raw)
                if kind is FieldKind.FLOAT and math.isfinite(number) and abs(number) > _FLOAT_MAX:
                    raise SchemaMismatchException("value out of range for float", field=path)
                return number
        raise SchemaMismatchException(f"expected {kind.value}, got {_type_of(raw)}", field=path)

    # ------------------------------------------------------------ proto -> JSON
    def decode(self, type_name: str, data: bytes) -> Dict[str, Any]:
        try:
            msg = self.message_class(type_name).FromString(data)
        except DecodeError as exc:
            raise SchemaMismatchException(f"cannot decode {type_name}: {exc}") from exc
        return self.from_message(msg)

    def from_message(self, msg: Message) -> Dict[str, Any]:
        return self._to_json(msg, self._schema(msg.DESCRIPTOR.full_name))

    def _to_json(self, msg: Message, schema: MessageSchema) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in schema.fields:
            key = f.name if self._preserve else f.json_name
            value = getattr(msg, f.name)
            if f.is_map:
                out[key] = {
                    self._map_key_json(k): self._value_json(f.map_value, v) for k, v in value.items()
                }
            elif f.repeated:
                out[key] = [self._value_json(f, v) for v in value]
            elif f.has_presence:
                if msg.HasField(f.name):
                    out[key] = self._value_json(f, value)
            else:
                out[key] = self._value_json(f, value)
        return out

    @staticmethod
    def _map_key_json(key: Any) -> str:
        if isinstance(key, bool):
            return "true" if key else "false"
        return str(key)

    def _value_json(self, f: FieldSchema, value: Any) -> Any:
        kind = f.kind
        if kind is FieldKind.MESSAGE:
            wkt = self._wkt_class(f.type_name)
            if wkt is None:
                return self._to_json(value, self._schema(f.type_name))
            return json_format.MessageToDict(
                wkt.FromString(value.SerializeToString()),
                descriptor_pool=self._snapshot.pool,
                preserving_proto_field_name=self._preserve,
            )
        if kind is FieldKind.ENUM:
            name = self._snapshot.enums[f.type_name].name_of(value)
            return name if name is not None else value
        if kind is FieldKind.BYTES:
            return base64.b64encode(value).decode("ascii")
        if kind.is_integer and kind.is_64bit:
            return str(value)
        if kind in (FieldKind.FLOAT, FieldKind.DOUBLE):
            if math.isnan(value):
                return "NaN"
            if math.isinf(value):
                return "Infinity" if value > 0 else "-Infinity"
        return value


__all__ = ["JsonCodec", "WELL_KNOWN_TYPES"]
