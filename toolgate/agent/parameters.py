"""
Action parameter descriptors.

Each parameter is a tagged variant keyed on ``kind``. Descriptors are
inferred from an action's representative example values and then refined
with explicit constraints (enums, bounds) where the action declares them.
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field


class _BaseParameter(BaseModel):
    name: str
    description: str = ""
    required: bool = False
    default: Any = None

    def check(self, value: Any) -> Optional[str]:
        """Return an error message if ``value`` does not fit, else None."""
        raise NotImplementedError


class StringParameter(_BaseParameter):
    kind: Literal["string"] = "string"
    enum: Optional[List[str]] = None
    pattern: Optional[str] = None

    def check(self, value: Any) -> Optional[str]:
        if not isinstance(value, str):
            return f"Parameter {self.name} must be a string"
        if self.enum and value not in self.enum:
            return f"Parameter {self.name} must be one of: {', '.join(self.enum)}"
        if self.pattern and not re.search(self.pattern, value):
            return f"Parameter {self.name} must match pattern: {self.pattern}"
        return None


class NumberParameter(_BaseParameter):
    kind: Literal["number", "integer"] = "number"
    minimum: Optional[float] = None
    maximum: Optional[float] = None

    def check(self, value: Any) -> Optional[str]:
        # bool is an int subclass
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return f"Parameter {self.name} must be a number"
        if self.kind == "integer" and not isinstance(value, int):
            return f"Parameter {self.name} must be an integer"
        if self.minimum is not None and value < self.minimum:
            return f"Parameter {self.name} must be at least {self.minimum:g}"
        if self.maximum is not None and value > self.maximum:
            return f"Parameter {self.name} must be at most {self.maximum:g}"
        return None


class BooleanParameter(_BaseParameter):
    kind: Literal["boolean"] = "boolean"

    def check(self, value: Any) -> Optional[str]:
        if not isinstance(value, bool):
            return f"Parameter {self.name} must be a boolean"
        return None


class ArrayParameter(_BaseParameter):
    kind: Literal["array"] = "array"

    def check(self, value: Any) -> Optional[str]:
        if not isinstance(value, list):
            return f"Parameter {self.name} must be an array"
        return None


class ObjectParameter(_BaseParameter):
    kind: Literal["object"] = "object"

    def check(self, value: Any) -> Optional[str]:
        if not isinstance(value, dict):
            return f"Parameter {self.name} must be an object"
        return None


ActionParameter = Annotated[
    Union[StringParameter, NumberParameter, BooleanParameter, ArrayParameter, ObjectParameter],
    Field(discriminator="kind"),
]


def parameter_from_example(name: str, example: Any, **overrides: Any) -> ActionParameter:
    """Build a descriptor whose kind is taken from a representative value."""
    fields: Dict[str, Any] = {"name": name, "default": example}
    fields.update(overrides)

    if isinstance(example, bool):
        return BooleanParameter(**fields)
    if isinstance(example, (int, float)):
        return NumberParameter(**fields)
    if isinstance(example, str):
        return StringParameter(**fields)
    if isinstance(example, (list, tuple)):
        fields["default"] = list(example)
        return ArrayParameter(**fields)
    if isinstance(example, dict):
        return ObjectParameter(**fields)
    raise TypeError(f"Cannot infer a parameter kind for {name!r} from {type(example).__name__}")


def infer_parameters(
    examples: Mapping[str, Any],
    constraints: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> List[ActionParameter]:
    constraints = constraints or {}
    return [
        parameter_from_example(name, value, **dict(constraints.get(name, {})))
        for name, value in examples.items()
    ]


def validate_parameters(parameters: List[ActionParameter], values: Mapping[str, Any]) -> List[str]:
    """Check ``values`` against the descriptors; returns error messages."""
    errors: List[str] = []
    for param in parameters:
        value = values.get(param.name)
        if value is None:
            if param.required:
                errors.append(f"Missing required parameter: {param.name}")
            continue
        problem = param.check(value)
        if problem:
            errors.append(problem)
    return errors
