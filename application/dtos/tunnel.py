"""
Tunnel / reflection DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class NoAuth(BaseModel):
    type: Literal["none"] = "none"


class BearerAuth(BaseModel):
    type: Literal["bearer"]
    token: str = Field(..., min_length=1)


class BasicAuth(BaseModel):
    type: Literal["basic"]
    username: str
    password: str = ""


AuthConfig = Annotated[Union[NoAuth, BearerAuth, BasicAuth], Field(discriminator="type")]


def _normalize_auth(v: Any) -> Any:
    if v is None:
        return None
    if isinstance(v, dict):
        kind = str(v.get("type") or "none").strip().lower()
        return {**v, "type": kind}
    return v


def _stringify_metadata(v: Any) -> Any:
    if v is None:
        return {}
    if isinstance(v, dict):
        return {str(k): v2 if isinstance(v2, str) else str(v2) for k, v2 in v.items()}
    return v


class CallTarget(BaseModel):
    target: str = Field(..., min_length=1, description="host:port or http(s):// URL")
    metadata: dict[str, str] = Field(default_factory=dict)
    auth: Optional[AuthConfig] = None

    @field_validator("target")
    @classmethod
    def _strip_target(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("target is required")
        return v

    @field_validator("auth", mode="before")
    @classmethod
    def _lower_auth_type(cls, v: Any) -> Any:
        return _normalize_auth(v)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_values(cls, v: Any) -> Any:
        return _stringify_metadata(v)


class InitFrame(CallTarget):
    """First frame of every tunnel."""

    model_config = ConfigDict(extra="forbid")

    type: Optional[Literal["init"]] = None
    service: str = Field(..., min_length=1)
    method: str = Field(..., min_length=1)
    # Hint only; the method descriptor decides the streaming shape
    mode: Optional[str] = None


class ReflectionRequest(CallTarget):
    pass


def describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "init"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


__all__ = [
    "AuthConfig",
    "BasicAuth",
    "BearerAuth",
    "CallTarget",
    "InitFrame",
    "NoAuth",
    "ReflectionRequest",
    "describe_validation_error",
]
