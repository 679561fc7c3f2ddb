"""Tests for the restricted formula evaluator."""

import pytest

from core.exceptions import ConfigurationError, FormulaError
from workflow.formula import evaluate_formula, substitute_variables


@pytest.mark.unit
class TestEvaluateFormula:
    def test_precedence_and_parentheses(self):
        assert evaluate_formula("2+3*4") == 14
        assert evaluate_formula("(2+3)*4") == 20

    def test_variables_substituted(self):
        lookup = {"revenue": 200, "cost": "50"}
        assert evaluate_formula("({revenue} - {cost}) / {revenue} * 100", lookup) == 75

    def test_rounds_to_two_places(self):
        assert evaluate_formula("10/3") == 3.33
        assert evaluate_formula("2/3") == 0.67

    def test_integral_result_is_int(self):
        result = evaluate_formula("1.5*2")
        assert result == 3
        assert isinstance(result, int)

    def test_division_by_zero_is_zero(self):
        assert evaluate_formula("{a}/{b}", {"a": 10, "b": 0}) == 0

    def test_negative_variable_keeps_sign(self):
        assert evaluate_formula("{x}*2", {"x": -5}) == -10
        assert evaluate_formula("10-{x}", {"x": -5}) == 15

    def test_unary_minus(self):
        assert evaluate_formula("-(3+2)") == -5

    def test_nested_variable_path(self):
        lookup = {"step1_output": {"result": 40}}
        assert evaluate_formula("{step1_output.result}/2", lookup) == 20

    def test_missing_variable(self):
        with pytest.raises(ConfigurationError, match="not found"):
            evaluate_formula("{missing}+1", {})

    def test_non_numeric_variable(self):
        with pytest.raises(ConfigurationError, match="not numeric"):
            evaluate_formula("{name}+1", {"name": "abc"})

    def test_boolean_variable_rejected(self):
        with pytest.raises(ConfigurationError):
            evaluate_formula("{flag}+1", {"flag": True})

    @pytest.mark.parametrize(
        "formula",
        ["__import__('os')", "2;3", "abs(-1)", "2**3", "1 % 2", "(1+2"],
    )
    def test_rejects_unsafe_or_malformed(self, formula):
        with pytest.raises(FormulaError):
            evaluate_formula(formula)

    def test_empty_formula(self):
        with pytest.raises(FormulaError):
            evaluate_formula("   ")


@pytest.mark.unit
class TestSubstituteVariables:
    def test_plain_text_unchanged(self):
        assert substitute_variables("1+2", {}) == "1+2"

    def test_decimal_formatting(self):
        assert substitute_variables("{v}", {"v": "1.50"}) == "1.50"
