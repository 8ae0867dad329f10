"""Proto descriptor domain exports."""
from .schema import (
    EnumSchema,
    FieldKind,
    FieldSchema,
    MessageSchema,
    MethodDescriptor,
    ServiceDescriptor,
    StreamingShape,
)

__all__ = [
    "EnumSchema",
    "FieldKind",
    "FieldSchema",
    "MessageSchema",
    "MethodDescriptor",
    "ServiceDescriptor",
    "StreamingShape",
]
