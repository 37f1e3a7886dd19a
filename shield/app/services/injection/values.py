"""Tagged value variant for traversing request payloads.

Decoded JSON bodies and query mappings are lifted into these types once, and
every traversal is a ``ValueVisitor`` with one method per variant.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class JsonValue(ABC):
    @abstractmethod
    def accept(self, visitor: "ValueVisitor[T]", path: str = "") -> T:
        """Dispatch to the visitor method for this variant."""


@dataclass(frozen=True)
class StringValue(JsonValue):
    value: str

    def accept(self, visitor, path=""):
        return visitor.visit_string(self, path)


@dataclass(frozen=True)
class NumberValue(JsonValue):
    value: Union[int, float]

    def accept(self, visitor, path=""):
        return visitor.visit_number(self, path)


@dataclass(frozen=True)
class BoolValue(JsonValue):
    value: bool

    def accept(self, visitor, path=""):
        return visitor.visit_bool(self, path)


@dataclass(frozen=True)
class NullValue(JsonValue):
    def accept(self, visitor, path=""):
        return visitor.visit_null(self, path)


@dataclass(frozen=True)
class ObjectValue(JsonValue):
    items: dict[str, JsonValue]

    def accept(self, visitor, path=""):
        return visitor.visit_object(self, path)


@dataclass(frozen=True)
class ArrayValue(JsonValue):
    items: list[JsonValue]

    def accept(self, visitor, path=""):
        return visitor.visit_array(self, path)


class ValueVisitor(ABC, Generic[T]):
    @abstractmethod
    def visit_string(self, value: StringValue, path: str) -> T: ...

    @abstractmethod
    def visit_number(self, value: NumberValue, path: str) -> T: ...

    @abstractmethod
    def visit_bool(self, value: BoolValue, path: str) -> T: ...

    @abstractmethod
    def visit_null(self, value: NullValue, path: str) -> T: ...

    @abstractmethod
    def visit_object(self, value: ObjectValue, path: str) -> T: ...

    @abstractmethod
    def visit_array(self, value: ArrayValue, path: str) -> T: ...


def child_path(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def index_path(path: str, index: int) -> str:
    return f"{path}[{index}]"


def from_python(data: Any) -> JsonValue:
    """Lift decoded JSON (or a query mapping) into the value variant.

    Raises:
        TypeError: For values JSON cannot represent
    """
    if isinstance(data, JsonValue):
        return data
    if data is None:
        return NullValue()
    # bool is a subclass of int, so it is checked first
    if isinstance(data, bool):
        return BoolValue(data)
    if isinstance(data, (int, float)):
        return NumberValue(data)
    if isinstance(data, str):
        return StringValue(data)
    if isinstance(data, Mapping):
        return ObjectValue({str(k): from_python(v) for k, v in data.items()})
    if isinstance(data, (list, tuple)):
        return ArrayValue([from_python(item) for item in data])
    raise TypeError(f"Unsupported value type: {type(data).__name__}")


class _PythonBuilder(ValueVisitor[Any]):
    def visit_string(self, value, path):
        return value.value

    def visit_number(self, value, path):
        return value.value

    def visit_bool(self, value, path):
        return value.value

    def visit_null(self, value, path):
        return None

    def visit_object(self, value, path):
        return {k: v.accept(self, child_path(path, k)) for k, v in value.items.items()}

    def visit_array(self, value, path):
        return [item.accept(self, index_path(path, i)) for i, item in enumerate(value.items)]


def to_python(value: JsonValue) -> Any:
    """Lower a value back into plain dicts, lists and scalars."""
    return value.accept(_PythonBuilder())
