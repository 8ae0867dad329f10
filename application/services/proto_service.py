"""Application service for proto definitions.

Use cases: register uploaded `.proto` sources (compiled with protoc) or
a precompiled descriptor set, load definitions from a target's server
reflection, and list what is currently registered.
"""
from __future__ import annotations

import asyncio
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Mapping, Optional, Sequence

import aiofiles

from core.logging_config import get_logger
from domain.common.exceptions import ProtoParseException
from domain.proto.schema import ServiceDescriptor
from infrastructure.grpc.compiler import ProtoCompiler, parse_descriptor_set
from infrastructure.grpc.reflection import ReflectionLoader
from infrastructure.grpc.registry import ProtoRegistry


logger = get_logger(__name__)

PROTO_SUFFIX = ".proto"
DESCRIPTOR_SET_SUFFIXES = {".protoset", ".pb", ".desc"}


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content: bytes


def _safe_relative(filename: str) -> PurePosixPath:
    """Keep sub-directories (they matter for imports) but never leave the workspace."""
    path = PurePosixPath((filename or "").replace("\\", "/"))
    if not path.name or path.is_absolute() or ".." in path.parts:
        raise ProtoParseException(f"Invalid file name: {filename!r}", field="proto")
    return path


class ProtoService:
    def __init__(
        self,
        *,
        registry: ProtoRegistry,
        compiler: ProtoCompiler,
        reflection: ReflectionLoader,
        upload_dir: str,
        max_upload_bytes: int,
        cleanup_delay_s: float = 600.0,
    ) -> None:
        self._registry = registry
        self._compiler = compiler
        self._reflection = reflection
        self._upload_dir = Path(upload_dir)
        self._max_upload_bytes = max_upload_bytes
        self._cleanup_delay_s = cleanup_delay_s
        self._cleanups: Dict[asyncio.Task, Path] = {}

    # ------------------------------------------------------------ use cases
    async def upload(self, files: Sequence[UploadedFile]) -> tuple[ServiceDescriptor, ...]:
        if not files:
            raise ProtoParseException("No file uploaded", field="proto")
        total = sum(len(f.content) for f in files)
        if total > self._max_upload_bytes:
            raise ProtoParseException(
                f"Upload too large: {total} > {self._max_upload_bytes} bytes",
                details={"size": total, "max_size": self._max_upload_bytes},
                field="proto",
            )

        paths = [_safe_relative(f.filename) for f in files]
        descriptor_sets = [p for p in paths if p.suffix.lower() in DESCRIPTOR_SET_SUFFIXES]
        protos = [p for p in paths if p.suffix.lower() == PROTO_SUFFIX]
        if len(protos) + len(descriptor_sets) != len(paths):
            bad = [str(p) for p in paths if p not in protos and p not in descriptor_sets]
            raise ProtoParseException(f"Unsupported file type: {', '.join(bad)}", field="proto")
        if descriptor_sets and (protos or len(descriptor_sets) > 1):
            raise ProtoParseException(
                "Upload either .proto sources or a single descriptor set", field="proto"
            )

        if descriptor_sets:
            descriptor_set = parse_descriptor_set(files[0].content)
        else:
            workspace = self._upload_dir / uuid.uuid4().hex
            try:
                sources = await self._save(workspace, files, protos)
                descriptor_set = await self._compiler.compile(workspace, sources)
            finally:
                self._schedule_cleanup(workspace)

        services = self._registry.register(descriptor_set)
        logger.info(
            "proto_uploaded",
            files=[str(p) for p in paths],
            services=[s.name for s in services],
        )
        return services

    async def load_from_reflection(
        self,
        target: str,
        metadata: Optional[Mapping[str, str]] = None,
        auth: Any = None,
    ) -> tuple[ServiceDescriptor, ...]:
        descriptor_set = await self._reflection.fetch(target, metadata, auth)
        return self._registry.register(descriptor_set)

    def list_services(self) -> Dict[str, list[str]]:
        return self._registry.list_services()

    # ------------------------------------------------------------ workspace
    async def _save(
        self, workspace: Path, files: Sequence[UploadedFile], relative: Sequence[PurePosixPath]
    ) -> list[Path]:
        saved: list[Path] = []
        for upload, rel in zip(files, relative):
            target = workspace.joinpath(*rel.parts)
            target.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(target, "wb") as f:
                await f.write(upload.content)
            saved.append(target)
        return saved

    def _schedule_cleanup(self, workspace: Path) -> None:
        if self._cleanup_delay_s <= 0:
            shutil.rmtree(workspace, ignore_errors=True)
            logger.debug("proto_workspace_removed", path=str(workspace))
            return
        task = asyncio.create_task(self._cleanup_later(workspace))
        self._cleanups[task] = workspace
        task.add_done_callback(lambda t: self._cleanups.pop(t, None))

    async def _cleanup_later(self, workspace: Path) -> None:
        try:
            await asyncio.sleep(self._cleanup_delay_s)
        finally:
            await asyncio.to_thread(shutil.rmtree, workspace, True)
            logger.debug("proto_workspace_removed", path=str(workspace))

    async def aclose(self) -> None:
        """Remove pending workspaces now instead of waiting for their delay."""
        pending = dict(self._cleanups)
        self._cleanups.clear()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        # a task cancelled before its first step never reaches its finally
        for workspace in pending.values():
            await asyncio.to_thread(shutil.rmtree, workspace, True)
            logger.debug("proto_workspace_removed", path=str(workspace))


__all__ = ["ProtoService", "UploadedFile"]
