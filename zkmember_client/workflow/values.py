"""Model-update values and the proof message built from them."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Union

from zkmember_client.constants import MAX_SAFE_INTEGER
from zkmember_client.errors import UnsupportedValueError

_DECIMAL_RE = re.compile(r"-?[0-9]+")


@dataclass(frozen=True)
class ExactInteger:
    value: int

    def canonical(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class NumericString:
    text: str

    def __post_init__(self) -> None:
        if not _DECIMAL_RE.fullmatch(self.text):
            raise UnsupportedValueError(f"not a decimal integer string: {self.text!r}")

    def canonical(self) -> str:
        return str(int(self.text))


UpdateValue = Union[ExactInteger, NumericString]


def coerce_update_value(value: Any) -> UpdateValue:
    """
    Validate one update value.

    Accepted:
        int of any size (bool excluded), float holding an integer within
        the exact float range, decimal integer string, or an already
        validated value.

    Raises:
        UnsupportedValueError: for any other value
    """
    if isinstance(value, (ExactInteger, NumericString)):
        return value
    if isinstance(value, bool):
        raise UnsupportedValueError("boolean is not a numeric update value")
    if isinstance(value, int):
        return ExactInteger(value)
    if isinstance(value, float):
        if not value.is_integer() or abs(value) > MAX_SAFE_INTEGER:
            raise UnsupportedValueError(f"unsafe number in update values: {value!r}")
        return ExactInteger(int(value))
    if isinstance(value, str):
        return NumericString(value.strip())
    raise UnsupportedValueError(f"unsupported update value type: {type(value).__name__}")


def coerce_update_values(values: Iterable[Any]) -> List[UpdateValue]:
    return [coerce_update_value(value) for value in values]


def encode_update_message(values: Iterable[Any]) -> bytes:
    """Encode update values as the UTF-8 JSON array of their decimal strings."""
    canonical = [value.canonical() for value in coerce_update_values(values)]
    return json.dumps(canonical, separators=(",", ":")).encode("utf-8")
