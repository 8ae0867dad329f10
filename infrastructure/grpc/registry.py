"""Process-wide proto registry.

A registration builds a complete :class:`RegistrySnapshot` from a
``FileDescriptorSet`` (descriptor pool + schema data + service
descriptors) and only then swaps it in. Readers hold on to one snapshot
reference for the whole session, so an upload in the middle of a call
is never observed half-applied.
"""
from __future__ import annotations

import threading
from typing import Dict, Iterable, Mapping, Optional

from google.protobuf import descriptor_pb2, descriptor_pool

from core.logging_config import get_logger
from domain.common.exceptions import (
    DescriptorNotLoadedException,
    MethodNotFoundException,
    ProtoParseException,
)
from domain.proto.schema import (
    EnumSchema,
    FieldKind,
    FieldSchema,
    MessageSchema,
    MethodDescriptor,
    ServiceDescriptor,
    StreamingShape,
)
from infrastructure.grpc.codec import JsonCodec


logger = get_logger(__name__)

_FDP = descriptor_pb2.FieldDescriptorProto

_KINDS = {
    _FDP.TYPE_DOUBLE: FieldKind.DOUBLE,
    _FDP.TYPE_FLOAT: FieldKind.FLOAT,
    _FDP.TYPE_INT64: FieldKind.INT64,
    _FDP.TYPE_UINT64: FieldKind.UINT64,
    _FDP.TYPE_INT32: FieldKind.INT32,
    _FDP.TYPE_FIXED64: FieldKind.FIXED64,
    _FDP.TYPE_FIXED32: FieldKind.FIXED32,
    _FDP.TYPE_BOOL: FieldKind.BOOL,
    _FDP.TYPE_STRING: FieldKind.STRING,
    _FDP.TYPE_GROUP: FieldKind.MESSAGE,
    _FDP.TYPE_MESSAGE: FieldKind.MESSAGE,
    _FDP.TYPE_BYTES: FieldKind.BYTES,
    _FDP.TYPE_UINT32: FieldKind.UINT32,
    _FDP.TYPE_ENUM: FieldKind.ENUM,
    _FDP.TYPE_SFIXED32: FieldKind.SFIXED32,
    _FDP.TYPE_SFIXED64: FieldKind.SFIXED64,
    _FDP.TYPE_SINT32: FieldKind.SINT32,
    _FDP.TYPE_SINT64: FieldKind.SINT64,
}


def _qualify(prefix: str, name: str) -> str:
    return f"{prefix}.{name}" if prefix else name


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


class RegistrySnapshot:
    """One immutable, complete registry state."""

    def __init__(
        self,
        *,
        services: Mapping[str, ServiceDescriptor],
        messages: Mapping[str, MessageSchema],
        enums: Mapping[str, EnumSchema],
        pool: descriptor_pool.DescriptorPool,
        preserve_field_names: bool = False,
    ) -> None:
        self.services = dict(services)
        self.messages = dict(messages)
        self.enums = dict(enums)
        self.pool = pool
        self.codec = JsonCodec(self, preserve_field_names=preserve_field_names)

    @classmethod
    def empty(cls) -> "RegistrySnapshot":
        return cls(services={}, messages={}, enums={}, pool=descriptor_pool.DescriptorPool())

    @property
    def is_empty(self) -> bool:
        return not self.services

    def find_service(self, name: str) -> Optional[ServiceDescriptor]:
        svc = self.services.get(name)
        if svc is not None:
            return svc
        # Short names are accepted as long as they are unambiguous
        matches = [s for s in self.services.values() if s.short_name == name]
        return matches[0] if len(matches) == 1 else None

    def lookup(self, service: str, method: str) -> MethodDescriptor:
        svc = self.find_service(service)
        found = svc.method(method) if svc is not None else None
        if found is None:
            raise MethodNotFoundException(service, method)
        return found

    def list_services(self) -> Dict[str, list[str]]:
        return {name: [m.name for m in svc.methods] for name, svc in self.services.items()}


def _ordered_files(files: Iterable[descriptor_pb2.FileDescriptorProto]) -> list[descriptor_pb2.FileDescriptorProto]:
    """Order files so that every dependency is added to the pool first."""
    by_name = {f.name: f for f in files}
    ordered: list[descriptor_pb2.FileDescriptorProto] = []
    visiting: set[str] = set()
    done: set[str] = set()
    default_pool = descriptor_pool.Default()

    def visit(name: str, importer: Optional[str]) -> None:
        if name in done:
            return
        if name in visiting:
            raise ProtoParseException(f"Import cycle detected at {name}")
        fdp = by_name.get(name)
        if fdp is None:
            # Well-known imports may be left out by reflection servers
            try:
                fd = default_pool.FindFileByName(name)
            except KeyError:
                raise ProtoParseException(
                    f"{importer or name}: import \"{name}\" was not found in the descriptor set"
                ) from None
            fdp = descriptor_pb2.FileDescriptorProto()
            fd.CopyToProto(fdp)
            by_name[name] = fdp
        visiting.add(name)
        for dep in fdp.dependency:
            visit(dep, name)
        visiting.discard(name)
        done.add(name)
        ordered.append(fdp)

    for f in list(by_name.values()):
        visit(f.name, None)
    return ordered


class _SchemaBuilder:
    """Turns FileDescriptorProtos into schema data, resolving every type reference."""

    def __init__(self, files: list[descriptor_pb2.FileDescriptorProto]) -> None:
        self._files = files
        self._message_protos: Dict[str, tuple[descriptor_pb2.DescriptorProto, str]] = {}
        self._enum_protos: Dict[str, descriptor_pb2.EnumDescriptorProto] = {}

    def build(self) -> tuple[Dict[str, ServiceDescriptor], Dict[str, MessageSchema], Dict[str, EnumSchema]]:
        for f in self._files:
            for msg in f.message_type:
                self._collect(f.package, msg, f.syntax or "proto2")
            for enum in f.enum_type:
                self._enum_protos[_qualify(f.package, enum.name)] = enum

        enums = {
            name: EnumSchema(full_name=name, values={v.name: v.number for v in proto.value})
            for name, proto in self._enum_protos.items()
        }
        messages = {
            name: self._message_schema(name, proto, syntax)
            for name, (proto, syntax) in self._message_protos.items()
        }
        services: Dict[str, ServiceDescriptor] = {}
        for f in self._files:
            for svc in f.service:
                full = _qualify(f.package, svc.name)
                if full in services:
                    raise ProtoParseException(f"Service {full} is defined more than once")
                services[full] = ServiceDescriptor(
                    name=full,
                    package=f.package,
                    methods=tuple(self._method(full, m) for m in svc.method),
                )
        return services, messages, enums

    def _collect(self, prefix: str, msg: descriptor_pb2.DescriptorProto, syntax: str) -> None:
        full = _qualify(prefix, msg.name)
        self._message_protos[full] = (msg, syntax)
        for nested in msg.nested_type:
            self._collect(full, nested, syntax)
        for enum in msg.enum_type:
            self._enum_protos[_qualify(full, enum.name)] = enum

    def _resolve(self, type_name: str, where: str, *, enum: bool) -> str:
        name = type_name.lstrip(".")
        table = self._enum_protos if enum else self._message_protos
        if name not in table:
            kind = "enum" if enum else "message"
            raise ProtoParseException(f"{where}: undefined {kind} type \"{name}\"", field=where)
        return name

    def _field(self, owner: str, proto: descriptor_pb2.FieldDescriptorProto, msg: descriptor_pb2.DescriptorProto,
               syntax: str) -> FieldSchema:
        where = f"{owner}.{proto.name}"
        kind = _KINDS.get(proto.type)
        if kind is None:
            raise ProtoParseException(f"{where}: unsupported field type {proto.type}", field=where)
        type_name = None
        if kind in (FieldKind.MESSAGE, FieldKind.ENUM):
            type_name = self._resolve(proto.type_name, where, enum=kind is FieldKind.ENUM)

        repeated = proto.label == _FDP.LABEL_REPEATED
        map_key = map_value = None
        if repeated and kind is FieldKind.MESSAGE:
            entry, entry_syntax = self._message_protos[type_name]
            if entry.options.map_entry:
                by_number = {f.number: f for f in entry.field}
                map_key = self._field(type_name, by_number[1], entry, entry_syntax)
                map_value = self._field(type_name, by_number[2], entry, entry_syntax)
                repeated = False

        oneof = None
        if proto.HasField("oneof_index") and not proto.proto3_optional:
            oneof = msg.oneof_decl[proto.oneof_index].name
        has_presence = (
            (kind is FieldKind.MESSAGE and not repeated and map_key is None)
            or oneof is not None
            or proto.proto3_optional
            or (syntax == "proto2" and proto.label == _FDP.LABEL_OPTIONAL)
        )
        return FieldSchema(
            name=proto.name,
            json_name=proto.json_name or _camel(proto.name),
            number=proto.number,
            kind=kind,
            repeated=repeated,
            type_name=type_name,
            map_key=map_key,
            map_value=map_value,
            has_presence=has_presence,
            oneof=oneof,
        )

    def _message_schema(self, name: str, proto: descriptor_pb2.DescriptorProto, syntax: str) -> MessageSchema:
        return MessageSchema(
            full_name=name,
            fields=tuple(self._field(name, f, proto, syntax) for f in proto.field),
        )

    def _method(self, service: str, proto: descriptor_pb2.MethodDescriptorProto) -> MethodDescriptor:
        where = f"{service}.{proto.name}"
        return MethodDescriptor(
            name=proto.name,
            service=service,
            shape=StreamingShape.from_flags(proto.client_streaming, proto.server_streaming),
            input_type=self._resolve(proto.input_type, where, enum=False),
            output_type=self._resolve(proto.output_type, where, enum=False),
        )


def build_snapshot(
    descriptor_set: descriptor_pb2.FileDescriptorSet,
    *,
    preserve_field_names: bool = False,
) -> RegistrySnapshot:
    """Build a complete snapshot or raise :class:`ProtoParseException`."""
    files = _ordered_files(descriptor_set.file)
    services, messages, enums = _SchemaBuilder(files).build()

    pool = descriptor_pool.DescriptorPool()
    for fdp in files:
        try:
            pool.AddSerializedFile(fdp.SerializeToString())
        except (TypeError, ValueError, KeyError) as exc:
            raise ProtoParseException(f"{fdp.name}: {exc}") from exc
    for svc in services.values():
        for m in svc.methods:
            for type_name in (m.input_type, m.output_type):
                try:
                    pool.FindMessageTypeByName(type_name)
                except KeyError as exc:
                    raise ProtoParseException(f"{m.path}: cannot load message type {type_name}") from exc

    return RegistrySnapshot(
        services=services,
        messages=messages,
        enums=enums,
        pool=pool,
        preserve_field_names=preserve_field_names,
    )


class ProtoRegistry:
    """Holds the current snapshot; ``register`` replaces it as a whole."""

    def __init__(self, *, preserve_field_names: bool = False) -> None:
        self._preserve_field_names = preserve_field_names
        self._lock = threading.Lock()
        self._snapshot = RegistrySnapshot.empty()

    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def register(self, descriptor_set: descriptor_pb2.FileDescriptorSet) -> tuple[ServiceDescriptor, ...]:
        snapshot = build_snapshot(descriptor_set, preserve_field_names=self._preserve_field_names)
        with self._lock:
            self._snapshot = snapshot
        logger.info(
            "proto_registered",
            files=len(descriptor_set.file),
            services=list(snapshot.services),
        )
        return tuple(snapshot.services.values())

    def lookup(self, service: str, method: str) -> MethodDescriptor:
        return self._snapshot.lookup(service, method)

    def list_services(self) -> Dict[str, list[str]]:
        snapshot = self._snapshot
        if snapshot.is_empty:
            raise DescriptorNotLoadedException()
        return snapshot.list_services()


__all__ = ["ProtoRegistry", "RegistrySnapshot", "build_snapshot"]
