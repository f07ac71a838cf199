"""Service layer for the import engine."""

from .transformer import TransformEngine, TransformPipeline, coerce
from .validator import ValidationEngine, ValidationKind, ValidationRules
from .resolver import FieldMappingResolver, CompiledMapping, MappedRecord
from .preview import PreviewGenerator

__all__ = [
    "TransformEngine",
    "TransformPipeline",
    "coerce",
    "ValidationEngine",
    "ValidationKind",
    "ValidationRules",
    "FieldMappingResolver",
    "CompiledMapping",
    "MappedRecord",
    "PreviewGenerator",
]
