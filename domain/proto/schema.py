"""Runtime-discovered service and message descriptors.

Everything here is plain data: it is built once from a descriptor set by
the registry and then only read. Message schemas reference each other
by full name through a shared ``schemas`` mapping, so recursive messages
need no special handling.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional


class StreamingShape(str, Enum):
    UNARY = "unary"
    SERVER_STREAM = "server_stream"
    CLIENT_STREAM = "client_stream"
    BIDI = "bidi"

    @classmethod
    def from_flags(cls, client_streaming: bool, server_streaming: bool) -> "StreamingShape":
        if client_streaming and server_streaming:
            return cls.BIDI
        if client_streaming:
            return cls.CLIENT_STREAM
        if server_streaming:
            return cls.SERVER_STREAM
        return cls.UNARY

    @property
    def client_streaming(self) -> bool:
        return self in (StreamingShape.CLIENT_STREAM, StreamingShape.BIDI)

    @property
    def server_streaming(self) -> bool:
        return self in (StreamingShape.SERVER_STREAM, StreamingShape.BIDI)


class FieldKind(str, Enum):
    DOUBLE = "double"
    FLOAT = "float"
    INT32 = "int32"
    INT64 = "int64"
    UINT32 = "uint32"
    UINT64 = "uint64"
    SINT32 = "sint32"
    SINT64 = "sint64"
    FIXED32 = "fixed32"
    FIXED64 = "fixed64"
    SFIXED32 = "sfixed32"
    SFIXED64 = "sfixed64"
    BOOL = "bool"
    STRING = "string"
    BYTES = "bytes"
    ENUM = "enum"
    MESSAGE = "message"

    @property
    def is_integer(self) -> bool:
        return self in _INT_RANGES

    @property
    def is_64bit(self) -> bool:
        return self in (
            FieldKind.INT64, FieldKind.UINT64, FieldKind.SINT64,
            FieldKind.FIXED64, FieldKind.SFIXED64,
        )

    @property
    def int_range(self) -> tuple[int, int]:
        return _INT_RANGES[self]


_I32 = (-(2 ** 31), 2 ** 31 - 1)
_I64 = (-(2 ** 63), 2 ** 63 - 1)
_U32 = (0, 2 ** 32 - 1)
_U64 = (0, 2 ** 64 - 1)

_INT_RANGES = {
    FieldKind.INT32: _I32,
    FieldKind.SINT32: _I32,
    FieldKind.SFIXED32: _I32,
    FieldKind.INT64: _I64,
    FieldKind.SINT64: _I64,
    FieldKind.SFIXED64: _I64,
    FieldKind.UINT32: _U32,
    FieldKind.FIXED32: _U32,
    FieldKind.UINT64: _U64,
    FieldKind.FIXED64: _U64,
}


@dataclass(frozen=True)
class FieldSchema:
    name: str
    json_name: str
    number: int
    kind: FieldKind
    repeated: bool = False
    # Full name of the message or enum type for MESSAGE / ENUM kinds
    type_name: Optional[str] = None
    # Set when the field is a map<K, V>; key/value are the entry's fields
    map_key: Optional["FieldSchema"] = None
    map_value: Optional["FieldSchema"] = None
    # Explicit presence: singular messages, oneof members, proto3 `optional`
    has_presence: bool = False
    oneof: Optional[str] = None

    @property
    def is_map(self) -> bool:
        return self.map_key is not None


@dataclass(frozen=True)
class EnumSchema:
    full_name: str
    values: Mapping[str, int]

    def name_of(self, number: int) -> Optional[str]:
        for name, value in self.values.items():
            if value == number:
                return name
        return None


@dataclass(frozen=True)
class MessageSchema:
    full_name: str
    fields: tuple[FieldSchema, ...]

    def field_by_json_key(self, key: str) -> Optional[FieldSchema]:
        """Resolve a JSON key by JSON name first, then by proto field name."""
        for f in self.fields:
            if f.json_name == key:
                return f
        for f in self.fields:
            if f.name == key:
                return f
        return None


@dataclass(frozen=True, eq=False)
class MethodDescriptor:
    name: str
    service: str
    shape: StreamingShape
    input_type: str
    output_type: str

    @property
    def path(self) -> str:
        """RPC path as sent on the wire, e.g. ``/example.ExampleService/UnaryCall``."""
        return f"/{self.service}/{self.name}"


@dataclass(frozen=True, eq=False)
class ServiceDescriptor:
    name: str
    package: str
    methods: tuple[MethodDescriptor, ...] = field(default_factory=tuple)

    @property
    def short_name(self) -> str:
        return self.name.rsplit(".", 1)[-1]

    def method(self, name: str) -> Optional[MethodDescriptor]:
        for m in self.methods:
            if m.name == name:
                return m
        return None


__all__ = [
    "StreamingShape",
    "FieldKind",
    "FieldSchema",
    "EnumSchema",
    "MessageSchema",
    "MethodDescriptor",
    "ServiceDescriptor",
]
