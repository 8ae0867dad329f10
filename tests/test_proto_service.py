import pytest

from application.services.proto_service import ProtoService, UploadedFile
from domain.common.exceptions import ProtoParseException
from infrastructure.grpc.compiler import ProtoCompiler
from infrastructure.grpc.invoker import DynamicInvoker
from infrastructure.grpc.reflection import ReflectionLoader
from infrastructure.grpc.registry import ProtoRegistry


@pytest.fixture
def registry():
    return ProtoRegistry()


def _service(registry, tmp_path, **kwargs):
    options = dict(max_upload_bytes=1024 * 1024, cleanup_delay_s=0)
    options.update(kwargs)
    return ProtoService(
        registry=registry,
        compiler=ProtoCompiler(),
        reflection=ReflectionLoader(DynamicInvoker()),
        upload_dir=str(tmp_path / "uploads"),
        **options,
    )


@pytest.mark.asyncio
async def test_upload_keeps_directories_for_imports(registry, tmp_path):
    svc = _service(registry, tmp_path)
    files = [
        UploadedFile("shop/v1/types.proto", b'syntax = "proto3";\npackage shop.v1;\nmessage Item { string sku = 1; }\n'),
        UploadedFile(
            "shop/v1/api.proto",
            b'syntax = "proto3";\npackage shop.v1;\nimport "shop/v1/types.proto";\n'
            b"service Shop { rpc Get (Item) returns (stream Item); }\n",
        ),
    ]

    services = await svc.upload(files)

    assert [s.name for s in services] == ["shop.v1.Shop"]
    assert svc.list_services() == {"shop.v1.Shop": ["Get"]}


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["../evil.proto", "/abs/evil.proto", "a/../../evil.proto", ""])
async def test_upload_rejects_unsafe_names(registry, tmp_path, name):
    with pytest.raises(ProtoParseException) as exc_info:
        await _service(registry, tmp_path).upload([UploadedFile(name, b"")])
    assert exc_info.value.field == "proto"


@pytest.mark.asyncio
async def test_upload_rejects_mixed_sources(registry, tmp_path, descriptor_set):
    files = [
        UploadedFile("a.protoset", descriptor_set.SerializeToString()),
        UploadedFile("b.proto", b'syntax = "proto3";'),
    ]
    with pytest.raises(ProtoParseException, match="either"):
        await _service(registry, tmp_path).upload(files)


@pytest.mark.asyncio
async def test_upload_requires_files(registry, tmp_path):
    with pytest.raises(ProtoParseException, match="No file"):
        await _service(registry, tmp_path).upload([])


@pytest.mark.asyncio
async def test_delayed_cleanup_runs_on_close(registry, tmp_path):
    svc = _service(registry, tmp_path, cleanup_delay_s=3600)
    await svc.upload([UploadedFile("x.proto", b'syntax = "proto3";\npackage x;\nservice S { rpc M (R) returns (R); }\nmessage R {}\n')])
    uploads = tmp_path / "uploads"
    assert any(uploads.iterdir())

    await svc.aclose()

    assert not any(uploads.iterdir())
