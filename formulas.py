"""Arithmetic formulas over a flat namespace of sanitized variable names.

Expressions are limited to numbers, identifiers, ``+ - * /``, unary signs and
parentheses. They are tokenized and parsed by hand; nothing is handed to
``eval``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Sequence, Union

from category_tree import Forest, find_by_id, find_by_path
from models import Transaction, TransactionType

logger = logging.getLogger(__name__)

ALLOWED_CHARACTERS = frozenset(
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_+-*/(). \t\r\n"
)
BASE_VARIABLES = (
    "totalIncome",
    "totalExpense",
    "transactionCount",
    "avgTransactionAmount",
    "netIncome",
    "savingsRate",
)


class FormulaError(ValueError):
    def __init__(self, expression: str, message: str) -> None:
        super().__init__(f'Invalid formula "{expression}": {message}')
        self.expression = expression
        self.reason = message


def _is_identifier_char(ch: str) -> bool:
    return ch.isascii() and (ch.isalnum() or ch == "_")


def sanitize_name(raw: Optional[str]) -> str:
    if not raw:
        return ""
    sanitized = "".join(ch if _is_identifier_char(ch) else "_" for ch in raw)
    if sanitized[0].isdigit():
        sanitized = "_" + sanitized
    return sanitized


def _substitute(expression: str, mapping: Mapping[str, str]) -> str:
    """Replace whole names left to right, preferring the longest key."""
    keys = sorted((k for k in mapping if k), key=len, reverse=True)
    out: list[str] = []
    i = 0
    while i < len(expression):
        prev = expression[i - 1] if i else ""
        replaced = False
        for key in keys:
            if not expression.startswith(key, i):
                continue
            end = i + len(key)
            nxt = expression[end] if end < len(expression) else ""
            if _is_identifier_char(key[0]) and prev and _is_identifier_char(prev):
                continue
            if _is_identifier_char(key[-1]) and nxt and _is_identifier_char(nxt):
                continue
            out.append(mapping[key])
            i = end
            replaced = True
            break
        if not replaced:
            out.append(expression[i])
            i += 1
    return "".join(out)


def sanitize_expression(expression: str, aliases: Mapping[str, str]) -> str:
    """Rewrite raw names (``Food & Dining``) to sanitized ones (``Food___Dining``)."""
    return _substitute(expression, {raw: safe for raw, safe in aliases.items() if raw != safe})


def prettify_expression(expression: str, aliases: Mapping[str, str]) -> str:
    reverse = {safe: raw for raw, safe in aliases.items() if raw != safe}
    return _substitute(expression, reverse)


@dataclass(frozen=True)
class Token:
    kind: str  # "number" | "name" | "op" | "lparen" | "rparen"
    text: str
    pos: int


def tokenize(expression: str) -> list[Token]:
    tokens: list[Token] = []
    i = 0
    n = len(expression)
    while i < n:
        ch = expression[i]
        if ch.isspace():
            i += 1
            continue
        if ch.isdigit() or (ch == "." and i + 1 < n and expression[i + 1].isdigit()):
            start = i
            seen_dot = False
            while i < n and (expression[i].isdigit() or expression[i] == "."):
                if expression[i] == ".":
                    if seen_dot:
                        raise ValueError(f"Malformed number at position {start}")
                    seen_dot = True
                i += 1
            if i < n and _is_identifier_char(expression[i]):
                raise ValueError(f"Malformed number at position {start}")
            tokens.append(Token("number", expression[start:i], start))
            continue
        if _is_identifier_char(ch):
            start = i
            while i < n and _is_identifier_char(expression[i]):
                i += 1
            tokens.append(Token("name", expression[start:i], start))
            continue
        if ch in "+-*/":
            tokens.append(Token("op", ch, i))
        elif ch == "(":
            tokens.append(Token("lparen", ch, i))
        elif ch == ")":
            tokens.append(Token("rparen", ch, i))
        else:
            raise ValueError(f"Unexpected character {ch!r} at position {i}")
        i += 1
    return tokens


@dataclass(frozen=True)
class Number:
    value: float


@dataclass(frozen=True)
class Name:
    name: str


@dataclass(frozen=True)
class Unary:
    op: str
    operand: "Node"


@dataclass(frozen=True)
class Binary:
    op: str
    left: "Node"
    right: "Node"


Node = Union[Number, Name, Unary, Binary]


class _Parser:
    # expr   := term (("+" | "-") term)*
    # term   := unary (("*" | "/") unary)*
    # unary  := ("+" | "-") unary | atom
    # atom   := number | name | "(" expr ")"

    def __init__(self, tokens: Sequence[Token]) -> None:
        self.tokens = tokens
        self.index = 0

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _take(self) -> Token:
        token = self._peek()
        if token is None:
            raise ValueError("Unexpected end of expression")
        self.index += 1
        return token

    def parse(self) -> Node:
        node = self._expr()
        extra = self._peek()
        if extra is not None:
            raise ValueError(f"Unexpected {extra.text!r} at position {extra.pos}")
        return node

    def _at_op(self, ops: str) -> Optional[str]:
        tok = self._peek()
        if tok is not None and tok.kind == "op" and tok.text in ops:
            self.index += 1
            return tok.text
        return None

    def _expr(self) -> Node:
        node = self._term()
        op = self._at_op("+-")
        while op:
            node = Binary(op, node, self._term())
            op = self._at_op("+-")
        return node

    def _term(self) -> Node:
        node = self._unary()
        op = self._at_op("*/")
        while op:
            node = Binary(op, node, self._unary())
            op = self._at_op("*/")
        return node

    def _unary(self) -> Node:
        op = self._at_op("+-")
        if op:
            return Unary(op, self._unary())
        return self._atom()

    def _atom(self) -> Node:
        tok = self._take()
        if tok.kind == "number":
            return Number(float(tok.text))
        if tok.kind == "name":
            return Name(tok.text)
        if tok.kind == "lparen":
            node = self._expr()
            closing = self._take()
            if closing.kind != "rparen":
                raise ValueError(f"Expected ')' at position {closing.pos}")
            return node
        raise ValueError(f"Unexpected {tok.text!r} at position {tok.pos}")


def check_characters(expression: str) -> None:
    bad = sorted({ch for ch in expression if ch not in ALLOWED_CHARACTERS})
    if bad:
        raise ValueError(f"Disallowed characters: {''.join(bad)}")


def parse_expression(expression: str) -> Node:
    try:
        check_characters(expression)
        return _Parser(tokenize(expression)).parse()
    except ValueError as exc:
        raise FormulaError(expression, str(exc)) from exc


def variables(node: Node) -> list[str]:
    found: list[str] = []

    def visit(current: Node) -> None:
        if isinstance(current, Name):
            if current.name not in found:
                found.append(current.name)
        elif isinstance(current, Unary):
            visit(current.operand)
        elif isinstance(current, Binary):
            visit(current.left)
            visit(current.right)

    visit(node)
    return found


def _evaluate(node: Node, namespace: Mapping[str, float]) -> float:
    if isinstance(node, Number):
        return node.value
    if isinstance(node, Name):
        return float(namespace.get(node.name, 0.0))
    if isinstance(node, Unary):
        value = _evaluate(node.operand, namespace)
        return -value if node.op == "-" else value
    left = _evaluate(node.left, namespace)
    right = _evaluate(node.right, namespace)
    if node.op == "+":
        return left + right
    if node.op == "-":
        return left - right
    if node.op == "*":
        return left * right
    if right == 0:
        raise ZeroDivisionError("division by zero")
    return left / right


def evaluate_expression(
    expression: Optional[str], namespace: Mapping[str, float]
) -> Optional[float]:
    if not expression or not expression.strip():
        return None
    tree = parse_expression(expression)
    for name in variables(tree):
        if name not in namespace:
            logger.warning(f"formula_missing_variable: name={name} default=0")
    try:
        result = _evaluate(tree, namespace)
    except (ArithmeticError, TypeError, ValueError) as exc:
        raise FormulaError(expression, str(exc)) from exc
    if not isinstance(result, (int, float)) or not math.isfinite(result):
        raise FormulaError(expression, "result is not a finite number")
    return result


@dataclass
class FormulaNamespace:
    values: dict[str, float] = field(default_factory=dict)
    # raw display name -> sanitized variable name
    aliases: dict[str, str] = field(default_factory=dict)

    def add(self, raw: str, value: float) -> str:
        safe = sanitize_name(raw)
        if not safe:
            return safe
        self.values[safe] = self.values.get(safe, 0.0) + value
        self.aliases.setdefault(raw, safe)
        return safe

    def set(self, raw: str, value: float) -> str:
        safe = sanitize_name(raw)
        if safe:
            self.values[safe] = value
            self.aliases.setdefault(raw, safe)
        return safe


def cents_to_units(cents: int) -> float:
    return cents / 100


def category_name(txn: Transaction, forest: Forest = ()) -> str:
    """Name of the node a transaction is filed under, or its raw label."""
    node = find_by_id(txn.category_id, forest) or find_by_path(txn.category, forest)
    return node.name if node is not None else txn.category


def build_namespace(
    transactions: Sequence[Transaction],
    budget_details: Iterable[object] = (),
    category_names: Iterable[str] = (),
    forest: Forest = (),
) -> FormulaNamespace:
    namespace = FormulaNamespace()
    total_income = sum(t.amount_cents for t in transactions if t.type == TransactionType.income)
    total_expense = sum(t.amount_cents for t in transactions if t.type == TransactionType.expense)
    total_amount = sum(t.amount_cents for t in transactions)

    namespace.set("totalIncome", cents_to_units(total_income))
    namespace.set("totalExpense", cents_to_units(total_expense))
    namespace.set("netIncome", cents_to_units(total_income - total_expense))
    namespace.set(
        "savingsRate",
        (total_income - total_expense) / total_income if total_income > 0 else 0.0,
    )
    namespace.set("transactionCount", float(len(transactions)))
    namespace.set(
        "avgTransactionAmount", cents_to_units(total_amount) / (len(transactions) or 1)
    )

    for name in category_names:
        if sanitize_name(name) not in namespace.values:
            namespace.set(name, 0.0)
    for txn in transactions:
        name = category_name(txn, forest)
        # category totals never shadow the base KPIs
        if name and sanitize_name(name) not in BASE_VARIABLES:
            namespace.add(name, cents_to_units(txn.amount_cents))

    for detail in budget_details:
        safe = sanitize_name(getattr(detail, "category_name"))
        for suffix, cents in (
            ("amount", getattr(detail, "amount_cents")),
            ("spent", getattr(detail, "spent_cents")),
            ("remaining", getattr(detail, "remaining_cents")),
        ):
            namespace.set(f"budget_{safe}_{suffix}", cents_to_units(cents))
    return namespace
