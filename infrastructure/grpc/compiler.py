"""Compile uploaded `.proto` sources into a FileDescriptorSet.

Runs ``python -m grpc_tools.protoc`` in a subprocess so protoc's
diagnostics (undefined types, syntax errors, missing imports) can be
returned to the uploader verbatim. When run as a module grpc_tools puts
its bundled well-known types on the proto path.
"""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Optional, Sequence

import aiofiles
from google.protobuf import descriptor_pb2
from google.protobuf.message import DecodeError

from core.logging_config import get_logger
from domain.common.exceptions import ProtoParseException


logger = get_logger(__name__)

DESCRIPTOR_SET_NAME = "compiled.protoset"


def parse_descriptor_set(data: bytes) -> descriptor_pb2.FileDescriptorSet:
    """Parse a serialized FileDescriptorSet (`.protoset` / `.pb`)."""
    try:
        descriptor_set = descriptor_pb2.FileDescriptorSet.FromString(data)
    except DecodeError as exc:
        raise ProtoParseException(f"Failed to parse descriptor set: {exc}") from exc
    if not descriptor_set.file:
        raise ProtoParseException("Descriptor set contains no files")
    return descriptor_set


class ProtoCompiler:
    def __init__(self, *, include_paths: Sequence[str] = (), timeout_s: float = 30.0) -> None:
        self._include_paths = list(include_paths)
        self._timeout_s = timeout_s

    def _args(self, workspace: Path, sources: Sequence[Path], out: Path) -> list[str]:
        args = [f"--proto_path={Path(p).resolve()}" for p in self._include_paths]
        args += [
            f"--proto_path={workspace}",
            f"--descriptor_set_out={out}",
            "--include_imports",
            "--include_source_info",
        ]
        args += [str(s.relative_to(workspace)) for s in sources]
        return args

    async def compile(
        self,
        workspace: Path,
        sources: Sequence[Path],
        *,
        output: Optional[Path] = None,
    ) -> descriptor_pb2.FileDescriptorSet:
        """Compile ``sources`` (files under ``workspace``) with their imports."""
        if not sources:
            raise ProtoParseException("No .proto file uploaded")
        workspace = workspace.resolve()
        sources = [s.resolve() for s in sources]
        out = (output or workspace / DESCRIPTOR_SET_NAME).resolve()
        proc = await asyncio.create_subprocess_exec(
            sys.executable, "-m", "grpc_tools.protoc", *self._args(workspace, sources, out),
            cwd=str(workspace),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ProtoParseException(f"protoc timed out after {self._timeout_s:g}s") from None

        diagnostics = stderr.decode("utf-8", errors="replace").replace(f"{workspace}/", "").strip()
        if proc.returncode != 0:
            logger.warning("protoc_failed", returncode=proc.returncode, stderr=diagnostics)
            raise ProtoParseException(
                diagnostics or "Failed to compile .proto with protoc",
                details={"returncode": proc.returncode},
            )

        async with aiofiles.open(out, "rb") as f:
            data = await f.read()
        logger.info("protoc_compiled", sources=[s.name for s in sources], bytes=len(data))
        return parse_descriptor_set(data)


__all__ = ["ProtoCompiler", "parse_descriptor_set", "DESCRIPTOR_SET_NAME"]
