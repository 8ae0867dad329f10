"""
Proto registry DTOs (Pydantic v2) returned by the HTTP API.
"""
from __future__ import annotations

from typing import Iterable

from pydantic import BaseModel

from domain.proto.schema import ServiceDescriptor


class MethodSummaryDTO(BaseModel):
    name: str
    shape: str
    input_type: str
    output_type: str
    path: str


class ServiceSummaryDTO(BaseModel):
    name: str
    package: str
    methods: list[MethodSummaryDTO]


class RegisteredServicesDTO(BaseModel):
    services: list[ServiceSummaryDTO]

    @classmethod
    def from_services(cls, services: Iterable[ServiceDescriptor]) -> "RegisteredServicesDTO":
        return cls(services=[
            ServiceSummaryDTO(
                name=svc.name,
                package=svc.package,
                methods=[
                    MethodSummaryDTO(
                        name=m.name,
                        shape=m.shape.value,
                        input_type=m.input_type,
                        output_type=m.output_type,
                        path=m.path,
                    )
                    for m in svc.methods
                ],
            )
            for svc in services
        ])


class SessionSummaryDTO(BaseModel):
    id: str
    target: str | None = None
    service: str | None = None
    method: str | None = None
    shape: str | None = None
    state: str
    created_at: str
