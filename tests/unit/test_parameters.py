"""
Unit tests for toolgate/agent/parameters.py - parameter descriptors.
"""

import pytest
from pydantic import TypeAdapter

from toolgate.agent.parameters import (
    ActionParameter,
    ArrayParameter,
    BooleanParameter,
    NumberParameter,
    ObjectParameter,
    StringParameter,
    infer_parameters,
    parameter_from_example,
    validate_parameters,
)


class TestInference:
    """Tests for descriptor inference from example values."""

    @pytest.mark.parametrize(
        "example,expected",
        [
            ("pocket", StringParameter),
            (6.0, NumberParameter),
            (40, NumberParameter),
            (True, BooleanParameter),
            (["a"], ArrayParameter),
            ({"x": 0}, ObjectParameter),
        ],
    )
    def test_kind_from_example(self, example, expected):
        param = parameter_from_example("p", example)
        assert isinstance(param, expected)
        assert param.default == example

    def test_unsupported_example(self):
        with pytest.raises(TypeError):
            parameter_from_example("p", None)

    def test_constraints_refine(self):
        params = infer_parameters(
            {"strategy": "pocket", "stepover": 40},
            {"strategy": {"enum": ["pocket", "contour"]}, "stepover": {"minimum": 10, "maximum": 90, "required": True}},
        )
        strategy, stepover = params
        assert strategy.enum == ["pocket", "contour"]
        assert stepover.required is True
        assert stepover.maximum == 90

    def test_tagged_union_round_trip(self):
        adapter = TypeAdapter(ActionParameter)
        param = adapter.validate_python({"kind": "number", "name": "depth", "minimum": 0.1})
        assert isinstance(param, NumberParameter)
        assert param.minimum == 0.1


class TestValidation:
    """Tests for validate_parameters."""

    def test_missing_required(self):
        params = [StringParameter(name="gcode", required=True)]
        assert validate_parameters(params, {}) == ["Missing required parameter: gcode"]
        assert validate_parameters(params, {"gcode": None}) == ["Missing required parameter: gcode"]

    def test_optional_may_be_absent(self):
        assert validate_parameters([StringParameter(name="note")], {}) == []

    def test_string_enum_and_pattern(self):
        param = StringParameter(name="axis", enum=["3-axis", "5-axis"])
        assert validate_parameters([param], {"axis": "4-axis"}) == ["Parameter axis must be one of: 3-axis, 5-axis"]

        pattern = StringParameter(name="code", pattern=r"^G\d+")
        assert validate_parameters([pattern], {"code": "G01"}) == []
        assert validate_parameters([pattern], {"code": "M3"}) == [r"Parameter code must match pattern: ^G\d+"]

    def test_number_bounds(self):
        param = NumberParameter(name="depth", minimum=0.1, maximum=1000)
        assert validate_parameters([param], {"depth": 5}) == []
        assert validate_parameters([param], {"depth": 0}) == ["Parameter depth must be at least 0.1"]
        assert validate_parameters([param], {"depth": 2000}) == ["Parameter depth must be at most 1000"]

    def test_number_rejects_bool_and_string(self):
        param = NumberParameter(name="depth")
        assert validate_parameters([param], {"depth": True}) == ["Parameter depth must be a number"]
        assert validate_parameters([param], {"depth": "5"}) == ["Parameter depth must be a number"]

    def test_integer_kind(self):
        param = NumberParameter(name="count", kind="integer")
        assert validate_parameters([param], {"count": 2}) == []
        assert validate_parameters([param], {"count": 2.5}) == ["Parameter count must be an integer"]

    def test_container_kinds(self):
        params = [ArrayParameter(name="ids"), ObjectParameter(name="props"), BooleanParameter(name="flag")]
        errors = validate_parameters(params, {"ids": "a", "props": [], "flag": 1})
        assert errors == [
            "Parameter ids must be an array",
            "Parameter props must be an object",
            "Parameter flag must be a boolean",
        ]
