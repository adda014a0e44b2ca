"""
Formula language for condition sets.

The rule editor lets operators type conditions as a formula instead of
filling rows one by one:

    credits < 20 AND is_paid_user == false OR user_tags in "vip,beta"

Supported:
- Comparisons: ``== != > >= < <= in !in`` followed by a value
- Presence: ``field exists`` / ``field !exists``
- ``AND`` / ``OR`` (case-insensitive, AND binds tighter) and parentheses
- Values: bare words/numbers or quoted strings (``"..."`` or ``'...'``)

Any AND/OR nesting is normalised to disjunctive normal form, so the result
is always a plain ConditionSet (one OR level of AND groups).
"""

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from lifecycle_engine.conditions.base import Condition, ConditionSet, Operator

# Distributing AND over OR can blow up; refuse formulas beyond this
MAX_GROUPS = 64
# Deepest parenthesis nesting accepted
MAX_DEPTH = 32


class FormulaSyntaxError(Exception):
    """Raised when a formula cannot be parsed."""

    def __init__(self, message: str, position: Optional[int] = None):
        self.reason = message
        self.position = position
        if position is not None:
            message = f"{message} at position {position}"
        super().__init__(message)


@dataclass(frozen=True)
class FormulaValidation:
    """Outcome of validate_formula()."""
    valid: bool
    error: Optional[str] = None
    position: Optional[int] = None
    condition_set: Optional[ConditionSet] = None


_SYMBOL_OPERATORS = {
    "==": Operator.EQUALS,
    "!=": Operator.NOT_EQUALS,
    ">": Operator.GT,
    ">=": Operator.GTE,
    "<": Operator.LT,
    "<=": Operator.LTE,
    "!in": Operator.NOT_IN,
    "!exists": Operator.NOT_EXISTS,
}
_WORD_OPERATORS = {
    "in": Operator.IN,
    "exists": Operator.EXISTS,
}
_OPERATOR_SYMBOLS = {
    Operator.EQUALS: "==",
    Operator.NOT_EQUALS: "!=",
    Operator.GT: ">",
    Operator.GTE: ">=",
    Operator.LT: "<",
    Operator.LTE: "<=",
    Operator.IN: "in",
    Operator.NOT_IN: "!in",
    Operator.EXISTS: "exists",
    Operator.NOT_EXISTS: "!exists",
}
_UNARY = (Operator.EXISTS, Operator.NOT_EXISTS)

_TOKEN_RE = re.compile(r"""
    (?P<ws>\s+)
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<op>==|!=|>=|<=|>|<|!in\b|!exists\b)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<word>[A-Za-z0-9_.+:\-]+)
""", re.VERBOSE)

_BARE_VALUE_RE = re.compile(r"^[A-Za-z0-9_.+:\-]+$")
_KEYWORDS = ("and", "or")

Token = Tuple[str, str, int]


def _unquote(raw: str) -> str:
    body = raw[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


def tokenize(text: str) -> List[Token]:
    """Split a formula into (kind, text, position) tokens, ending with EOF."""
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise FormulaSyntaxError(f"Unexpected character {text[pos]!r}", pos)
        kind = match.lastgroup
        value = match.group()
        if kind == "word" and value.lower() in _KEYWORDS:
            kind = value.lower()
        elif kind == "string":
            value = _unquote(value)
        if kind != "ws":
            tokens.append((kind, value, pos))
        pos = match.end()
    tokens.append(("eof", "", len(text)))
    return tokens


class _Parser:
    """Recursive descent: expr := term (OR term)*, term := factor (AND factor)*."""

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.index = 0
        self.depth = 0

    def peek(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def expect(self, kind: str, what: str) -> Token:
        token = self.peek()
        if token[0] != kind:
            raise FormulaSyntaxError(f"Expected {what}, got {token[1] or 'end of formula'!r}", token[2])
        return self.advance()

    def parse(self) -> List[List[Condition]]:
        if self.peek()[0] == "eof":
            return []
        groups = self.expr()
        self.expect("eof", "AND, OR or end of formula")
        return groups

    def expr(self) -> List[List[Condition]]:
        groups = self.term()
        while self.peek()[0] == "or":
            self.advance()
            groups = groups + self.term()
            self._check_size(groups)
        return groups

    def term(self) -> List[List[Condition]]:
        groups = self.factor()
        while self.peek()[0] == "and":
            self.advance()
            right = self.factor()
            groups = [left + extra for left in groups for extra in right]
            self._check_size(groups)
        return groups

    def factor(self) -> List[List[Condition]]:
        if self.peek()[0] == "lparen":
            position = self.advance()[2]
            if self.depth >= MAX_DEPTH:
                raise FormulaSyntaxError("Formula nested too deeply", position)
            self.depth += 1
            groups = self.expr()
            self.expect("rparen", "')'")
            self.depth -= 1
            return groups
        return [[self.comparison()]]

    def comparison(self) -> Condition:
        field_name = self.expect("word", "field name")[1]

        kind, text, position = self.advance()
        if kind == "op":
            operator = _SYMBOL_OPERATORS[text]
        elif kind == "word" and text.lower() in _WORD_OPERATORS:
            operator = _WORD_OPERATORS[text.lower()]
        else:
            raise FormulaSyntaxError(f"Expected operator after '{field_name}'", position)

        value = ""
        if operator not in _UNARY:
            kind, value, position = self.advance()
            if kind not in ("word", "string"):
                raise FormulaSyntaxError(f"Expected value after '{field_name}'", position)
        return Condition(field=field_name, operator=operator.value, value=value)

    def _check_size(self, groups: List[List[Condition]]) -> None:
        if len(groups) > MAX_GROUPS:
            raise FormulaSyntaxError(f"Formula expands to more than {MAX_GROUPS} groups")


def parse_formula(text: str) -> ConditionSet:
    """
    Parse a formula into a ConditionSet in disjunctive normal form.

    A blank formula parses to the empty (always matching) set.

    Raises:
        FormulaSyntaxError: On any syntax error
    """
    groups = _Parser(tokenize(text or "")).parse()
    return ConditionSet.of(*groups)


def _format_value(value: str) -> str:
    if _BARE_VALUE_RE.match(value) and value.lower() not in _KEYWORDS + tuple(_WORD_OPERATORS):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _format_condition(condition: Condition) -> str:
    op = condition.op
    if op is None:
        raise ValueError(f"Cannot format unknown operator {condition.operator!r}")
    symbol = _OPERATOR_SYMBOLS[op]
    if op in _UNARY:
        return f"{condition.field} {symbol}"
    return f"{condition.field} {symbol} {_format_value(condition.value)}"


def format_formula(condition_set: ConditionSet) -> str:
    """Render a ConditionSet as a formula; multi-condition groups are parenthesised when OR-ed."""
    groups = [group for group in condition_set if len(group)]
    parts = []
    for group in groups:
        text = " AND ".join(_format_condition(c) for c in group)
        if len(groups) > 1 and len(group) > 1:
            text = f"({text})"
        parts.append(text)
    return " OR ".join(parts)


def validate_formula(text: str, known_fields: Optional[Iterable[str]] = None) -> FormulaValidation:
    """
    Check a formula without raising.

    Args:
        text: Formula text
        known_fields: If given, every referenced field must be in it

    Returns:
        FormulaValidation
    """
    try:
        condition_set = parse_formula(text)
    except FormulaSyntaxError as e:
        return FormulaValidation(valid=False, error=e.reason, position=e.position)

    if known_fields is not None:
        known = set(known_fields)
        for name in condition_set.fields():
            if name not in known:
                position = (text or "").find(name)
                return FormulaValidation(
                    valid=False,
                    error=f"Unknown field '{name}'",
                    position=position if position >= 0 else None,
                )

    return FormulaValidation(valid=True, condition_set=condition_set)


__all__ = [
    "MAX_DEPTH",
    "MAX_GROUPS",
    "FormulaSyntaxError",
    "FormulaValidation",
    "tokenize",
    "parse_formula",
    "format_formula",
    "validate_formula",
]
