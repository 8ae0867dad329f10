import pytest
from google.protobuf import descriptor_pb2

from domain.common.exceptions import (
    DescriptorNotLoadedException,
    MethodNotFoundException,
    ProtoParseException,
)
from domain.proto.schema import StreamingShape
from infrastructure.grpc.compiler import ProtoCompiler, parse_descriptor_set
from infrastructure.grpc.registry import ProtoRegistry


def test_methods_carry_streaming_shape(snapshot):
    shapes = {m.name: m.shape for m in snapshot.services["bridge.test.TestService"].methods}

    assert shapes["Echo"] is StreamingShape.UNARY
    assert shapes["Tagged"] is StreamingShape.SERVER_STREAM
    assert shapes["Sum"] is StreamingShape.CLIENT_STREAM
    assert shapes["Chat"] is StreamingShape.BIDI


def test_shape_names_used_on_the_wire():
    assert [s.value for s in StreamingShape] == ["unary", "server_stream", "client_stream", "bidi"]


def test_lookup_by_full_and_short_name(snapshot):
    method = snapshot.lookup("bridge.test.TestService", "Sum")

    assert method.path == "/bridge.test.TestService/Sum"
    assert method.input_type == "bridge.test.SumRequest"
    assert method.output_type == "bridge.test.SumReply"
    assert snapshot.lookup("TestService", "Sum") is method


def test_lookup_unknown_method(snapshot):
    with pytest.raises(MethodNotFoundException) as exc_info:
        snapshot.lookup("bridge.test.TestService", "Missing")
    assert exc_info.value.details == {"service": "bridge.test.TestService", "method": "Missing"}


def test_list_services(registry):
    services = registry.list_services()

    assert set(services) == {"bridge.test.TestService", "bridge.test.RichService"}
    assert services["bridge.test.RichService"] == ["Store"]


def test_empty_registry_refuses_listing():
    with pytest.raises(DescriptorNotLoadedException):
        ProtoRegistry().list_services()


def test_register_replaces_snapshot_as_a_whole(registry, descriptor_set):
    before = registry.snapshot()
    trimmed = descriptor_pb2.FileDescriptorSet()
    trimmed.CopyFrom(descriptor_set)
    for fdp in trimmed.file:
        if fdp.name == "bridge_test.proto":
            del fdp.service[1]

    registry.register(trimmed)

    assert "bridge.test.RichService" in before.services
    assert list(registry.list_services()) == ["bridge.test.TestService"]


def test_missing_import_is_a_parse_error(descriptor_set):
    only_main = descriptor_pb2.FileDescriptorSet()
    only_main.file.extend(f for f in descriptor_set.file if f.name == "bridge_test.proto")
    only_main.file[0].dependency.append("vendor/missing.proto")

    with pytest.raises(ProtoParseException) as exc_info:
        ProtoRegistry().register(only_main)
    assert "vendor/missing.proto" in exc_info.value.message


def test_well_known_imports_may_be_omitted(descriptor_set):
    only_main = descriptor_pb2.FileDescriptorSet()
    only_main.file.extend(f for f in descriptor_set.file if f.name == "bridge_test.proto")

    services = ProtoRegistry().register(only_main)
    assert {s.name for s in services} == {"bridge.test.TestService", "bridge.test.RichService"}


def test_parse_descriptor_set_rejects_garbage():
    with pytest.raises(ProtoParseException):
        parse_descriptor_set(b"\x0a\xff")
    with pytest.raises(ProtoParseException):
        parse_descriptor_set(b"")


@pytest.mark.asyncio
async def test_compiler_reports_undefined_type(tmp_path):
    source = tmp_path / "broken.proto"
    source.write_text(
        'syntax = "proto3";\n'
        "package broken;\n"
        "message Req { Missing thing = 1; }\n",
        encoding="utf-8",
    )

    with pytest.raises(ProtoParseException) as exc_info:
        await ProtoCompiler().compile(tmp_path, [source])
    message = exc_info.value.message
    assert "Missing" in message
    assert "broken.proto" in message
    assert str(tmp_path) not in message


@pytest.mark.asyncio
async def test_compiler_resolves_sibling_imports(tmp_path):
    (tmp_path / "common").mkdir()
    (tmp_path / "common" / "types.proto").write_text(
        'syntax = "proto3";\npackage common;\nmessage Id { string value = 1; }\n', encoding="utf-8"
    )
    main = tmp_path / "svc.proto"
    main.write_text(
        'syntax = "proto3";\n'
        "package svc;\n"
        'import "common/types.proto";\n'
        "service Lookup { rpc Get (common.Id) returns (common.Id); }\n",
        encoding="utf-8",
    )

    descriptor_set = await ProtoCompiler().compile(tmp_path, [main])
    services = ProtoRegistry().register(descriptor_set)

    assert [s.name for s in services] == ["svc.Lookup"]
    assert services[0].methods[0].input_type == "common.Id"
