"""Restricted arithmetic formula evaluator.

Formulas look like ``({revenue} - {cost}) / {revenue} * 100``. Variables are
substituted from the context first; the remaining text may only contain
digits, ``.`` and ``+ - * / ( )``. Evaluation is a small recursive-descent
parser over Decimal, so no string ever reaches a general-purpose evaluator.
"""

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Union

from core.exceptions import ConfigurationError, FormulaError
from workflow.templating import get_nested_value

VARIABLE_TOKEN = re.compile(r"\{([A-Za-z_][\w.]*)\}")
ALLOWED_FORMULA = re.compile(r"^[\d.+\-*/()]+$")
_NUMBER = re.compile(r"\d+(?:\.\d+)?|\.\d+")
_TWO_PLACES = Decimal("0.01")


class _NonFinite(Exception):
    """Raised internally when an intermediate result is not a finite number."""


def substitute_variables(formula: str, lookup: Mapping[str, Any]) -> str:
    """Replace ``{var}`` tokens with the numeric values they name.

    Raises:
        ConfigurationError: If a variable is missing or not numeric
    """

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        value = lookup.get(name) if name in lookup else get_nested_value(lookup, name)
        if value is None:
            raise ConfigurationError(f"Variable '{name}' not found in context")
        if isinstance(value, bool):
            raise ConfigurationError(f"Variable '{name}' is not numeric: {value!r}")
        try:
            number = Decimal(str(value).strip())
        except InvalidOperation:
            raise ConfigurationError(f"Variable '{name}' is not numeric: {value!r}")
        if not number.is_finite():
            raise ConfigurationError(f"Variable '{name}' is not finite: {value!r}")
        # Parenthesised so negative values keep their sign under operators
        text = format(number, "f")
        return f"({text})" if number < 0 else text

    return VARIABLE_TOKEN.sub(_replace, formula)


class _Parser:
    """expr := term (('+'|'-') term)* ; term := factor (('*'|'/') factor)* ;
    factor := ('+'|'-') factor | number | '(' expr ')'"""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def parse(self) -> Decimal:
        value = self._expr()
        if self.pos != len(self.text):
            raise FormulaError(f"Unexpected '{self.text[self.pos]}' at position {self.pos}")
        return value

    def _peek(self) -> Optional[str]:
        return self.text[self.pos] if self.pos < len(self.text) else None

    def _expr(self) -> Decimal:
        value = self._term()
        while self._peek() in ("+", "-"):
            op = self.text[self.pos]
            self.pos += 1
            rhs = self._term()
            value = value + rhs if op == "+" else value - rhs
        return value

    def _term(self) -> Decimal:
        value = self._factor()
        while self._peek() in ("*", "/"):
            op = self.text[self.pos]
            self.pos += 1
            rhs = self._factor()
            if op == "*":
                value = value * rhs
            else:
                if rhs == 0:
                    raise _NonFinite()
                value = value / rhs
        return value

    def _factor(self) -> Decimal:
        char = self._peek()
        if char is None:
            raise FormulaError("Unexpected end of formula")
        if char in ("+", "-"):
            self.pos += 1
            operand = self._factor()
            return -operand if char == "-" else operand
        if char == "(":
            self.pos += 1
            value = self._expr()
            if self._peek() != ")":
                raise FormulaError("Unbalanced parentheses in formula")
            self.pos += 1
            return value
        match = _NUMBER.match(self.text, self.pos)
        if not match:
            raise FormulaError(f"Unexpected '{char}' at position {self.pos}")
        self.pos = match.end()
        return Decimal(match.group(0))


def evaluate_formula(
    formula: str,
    lookup: Optional[Mapping[str, Any]] = None,
) -> Union[int, float]:
    """Evaluate a formula to a number rounded to 2 decimals (half-up).

    Division by zero and other non-finite results evaluate to 0.

    Raises:
        ConfigurationError: If a referenced variable is missing or not numeric
        FormulaError: If the substituted formula has disallowed characters or
            does not parse
    """
    if not isinstance(formula, str) or not formula.strip():
        raise FormulaError("Formula is empty")

    expression = substitute_variables(formula, lookup or {})
    expression = re.sub(r"\s+", "", expression)
    if not ALLOWED_FORMULA.match(expression):
        raise FormulaError(
            "Invalid formula: only numbers and + - * / ( ) are allowed after substitution"
        )

    try:
        result = _Parser(expression).parse()
    except _NonFinite:
        return 0
    except InvalidOperation:
        return 0
    if not result.is_finite():
        return 0

    rounded = result.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)
    if rounded == rounded.to_integral_value():
        return int(rounded)
    return float(rounded)
