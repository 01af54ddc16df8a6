"""
Schema registry: the enumerated record layouts and row parsing against them.

The variant is chosen once from configuration and is never inferred from file
content. Parsing delegates type coercion to the variant's pydantic model.
"""

from __future__ import annotations

import enum
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, List, Sequence, Tuple, Type

from pydantic import TypeAdapter, ValidationError

from streamagg.domain.models import OrderRecordV1, OrderRecordV2, Record
from streamagg.errors import SchemaValidationError

NUMERIC_TYPES: Tuple[type, ...] = (int, Decimal, float)


class SchemaVariant(str, enum.Enum):
    V1 = "v1"
    V2 = "v2"

    @classmethod
    def parse(cls, value: object) -> "SchemaVariant":
        """
        Accept the selector spellings operators use: ``v1``, ``1``, ``variant 1``.
        """
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower().replace("variant", "").replace("_", "").strip()
        if not text.startswith("v"):
            text = f"v{text}"
        try:
            return cls(text)
        except ValueError:
            raise ValueError(
                f"Unknown schema variant {value!r}. Available: {', '.join(v.value for v in cls)}"
            ) from None

    @property
    def model(self) -> Type[Record]:
        return _VARIANT_MODELS[self]

    @property
    def fields(self) -> List[Tuple[str, Any]]:
        """Ordered (field name, declared type) pairs."""
        return [(name, info.annotation) for name, info in self.model.model_fields.items()]

    @property
    def field_names(self) -> List[str]:
        return list(self.model.model_fields)


_VARIANT_MODELS: Dict[SchemaVariant, Type[Record]] = {
    SchemaVariant.V1: OrderRecordV1,
    SchemaVariant.V2: OrderRecordV2,
}


@lru_cache(maxsize=None)
def _adapter(annotation: Any) -> TypeAdapter:
    return TypeAdapter(annotation)


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ()))
    return f"{loc}: {err.get('msg', 'invalid value')}" if loc else err.get("msg", "invalid value")


class SchemaRegistry:
    """
    Parses raw CSV rows into records of the configured variant.
    """

    def __init__(self, variant: SchemaVariant) -> None:
        self.variant = SchemaVariant.parse(variant)
        self._model = self.variant.model
        self._names = self.variant.field_names
        self._types = dict(self.variant.fields)

    @property
    def field_names(self) -> List[str]:
        return list(self._names)

    def field_type(self, name: str) -> Any:
        try:
            return self._types[name]
        except KeyError:
            raise KeyError(f"Field '{name}' is not part of schema variant {self.variant.value}") from None

    def is_numeric(self, name: str) -> bool:
        return self.field_type(name) in NUMERIC_TYPES

    def check_header(self, header: Sequence[str]) -> bool:
        return [col.strip() for col in header] == self._names

    def parse(self, raw_row: Sequence[str], line: int | None = None, path: str | None = None) -> Record:
        """
        Coerce one raw row into a typed record.

        Raises
        ------
        SchemaValidationError
            On a column-count mismatch or a value that fails its type coercion.
        """
        if len(raw_row) != len(self._names):
            raise SchemaValidationError(
                f"expected {len(self._names)} columns, got {len(raw_row)}", line=line, path=path
            )
        try:
            return self._model.model_validate(dict(zip(self._names, raw_row)))
        except ValidationError as exc:
            raise SchemaValidationError(_first_error(exc), line=line, path=path) from exc

    def coerce(self, name: str, value: Any) -> Any:
        """Convert a JSON-restored value back to the declared type of ``name``."""
        try:
            return _adapter(self.field_type(name)).validate_python(value)
        except ValidationError as exc:
            raise SchemaValidationError(f"{name}: {_first_error(exc)}") from exc


__all__ = ["NUMERIC_TYPES", "SchemaVariant", "SchemaRegistry"]
