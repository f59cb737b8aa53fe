"""Evaluator for the store's condition and update expression language.

The in-memory backend accepts exactly the expression strings a DynamoDB
table accepts, so repositories are written once and run against either
backend.  Only the subset the repositories use is implemented:

* conditions: ``= <> < <= > >=``, ``BETWEEN x AND y``, ``IN (a, b)``,
  ``AND`` / ``OR`` / ``NOT``, parentheses and the functions
  ``begins_with``, ``contains``, ``attribute_exists``,
  ``attribute_not_exists``;
* updates: ``SET`` (plain values, ``if_not_exists``, ``list_append``,
  ``a + :n`` / ``a - :n``) and ``REMOVE`` clauses.

Attribute paths are single top-level names (``#name`` placeholders or bare
identifiers).  Malformed expressions and unknown placeholders raise a
``ValidationException`` just like the real store.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Final, Mapping

from sachain.storage.errors import StoreOperationError

Item = dict[str, Any]


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "<missing>"


MISSING: Final = _Missing()

Operand = Callable[[Mapping[str, Any]], Any]
Predicate = Callable[[Mapping[str, Any]], bool]

_TOKEN_RE: Final[re.Pattern[str]] = re.compile(
    r"\s*(?:"
    r"(?P<name>#[A-Za-z0-9_]+)"
    r"|(?P<value>:[A-Za-z0-9_]+)"
    r"|(?P<op><>|<=|>=|=|<|>|\(|\)|,|\+|-)"
    r"|(?P<ident>[A-Za-z_][A-Za-z0-9_]*)"
    r")"
)

_KEYWORDS: Final[frozenset[str]] = frozenset({"AND", "OR", "NOT", "BETWEEN", "IN", "SET", "REMOVE"})
_COMPARATORS: Final[frozenset[str]] = frozenset({"=", "<>", "<", "<=", ">", ">="})


def _invalid(message: str) -> StoreOperationError:
    return StoreOperationError("ValidationException", message, http_status=400)


@dataclass(slots=True)
class _Token:
    kind: str  # name | value | op | ident | keyword
    text: str


def _tokenize(expression: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    stripped = expression.rstrip()
    while pos < len(stripped):
        match = _TOKEN_RE.match(stripped, pos)
        if match is None or match.end() == pos:
            raise _invalid(f"Invalid expression: unexpected character at position {pos}: {expression!r}")
        kind = match.lastgroup or ""
        text = match.group(kind)
        if kind == "ident" and text.upper() in _KEYWORDS:
            tokens.append(_Token("keyword", text.upper()))
        else:
            tokens.append(_Token(kind, text))
        pos = match.end()
    return tokens


class _Parser:
    """Recursive-descent parser producing closures over an item."""

    def __init__(
        self,
        expression: str,
        names: Mapping[str, str] | None,
        values: Mapping[str, Any] | None,
    ) -> None:
        self._expression = expression
        self._tokens = _tokenize(expression)
        self._pos = 0
        self._names = dict(names or {})
        self._values = dict(values or {})

    # -- token helpers ----------------------------------------------------------

    def _peek(self, offset: int = 0) -> _Token | None:
        idx = self._pos + offset
        return self._tokens[idx] if idx < len(self._tokens) else None

    def _next(self) -> _Token:
        tok = self._peek()
        if tok is None:
            raise _invalid(f"Invalid expression: unexpected end of input: {self._expression!r}")
        self._pos += 1
        return tok

    def _accept(self, kind: str, text: str | None = None) -> bool:
        tok = self._peek()
        if tok is not None and tok.kind == kind and (text is None or tok.text == text):
            self._pos += 1
            return True
        return False

    def _expect(self, kind: str, text: str | None = None) -> _Token:
        tok = self._next()
        if tok.kind != kind or (text is not None and tok.text != text):
            raise _invalid(f"Invalid expression: expected {text or kind}, got {tok.text!r}: {self._expression!r}")
        return tok

    @property
    def at_end(self) -> bool:
        return self._pos >= len(self._tokens)

    # -- operands ---------------------------------------------------------------

    def attribute_name(self) -> str:
        tok = self._next()
        if tok.kind == "name":
            if tok.text not in self._names:
                raise _invalid(f"An expression attribute name used in the document path is not defined: {tok.text}")
            return self._names[tok.text]
        if tok.kind == "ident":
            return tok.text
        raise _invalid(f"Invalid expression: expected attribute name, got {tok.text!r}")

    def operand(self) -> Operand:
        tok = self._peek()
        if tok is None:
            raise _invalid(f"Invalid expression: unexpected end of input: {self._expression!r}")
        if tok.kind == "value":
            self._pos += 1
            if tok.text not in self._values:
                raise _invalid(f"An expression attribute value used in expression is not defined: {tok.text}")
            value = self._values[tok.text]
            return lambda _item: value
        if tok.kind == "ident" and tok.text == "size" and self._peek(1) is not None and self._peek(1).text == "(":
            self._pos += 1
            self._expect("op", "(")
            name = self.attribute_name()
            self._expect("op", ")")
            return lambda item: len(item[name]) if name in item else MISSING
        name = self.attribute_name()
        return lambda item: item.get(name, MISSING)

    # -- conditions -------------------------------------------------------------

    def condition(self) -> Predicate:
        left = self._conjunction()
        while self._accept("keyword", "OR"):
            right = self._conjunction()
            left = (lambda a, b: lambda item: a(item) or b(item))(left, right)
        return left

    def _conjunction(self) -> Predicate:
        left = self._negation()
        while self._accept("keyword", "AND"):
            right = self._negation()
            left = (lambda a, b: lambda item: a(item) and b(item))(left, right)
        return left

    def _negation(self) -> Predicate:
        if self._accept("keyword", "NOT"):
            inner = self._negation()
            return lambda item: not inner(item)
        return self._primary()

    def _primary(self) -> Predicate:
        tok = self._peek()
        if tok is None:
            raise _invalid(f"Invalid expression: unexpected end of input: {self._expression!r}")
        if tok.kind == "op" and tok.text == "(":
            self._pos += 1
            inner = self.condition()
            self._expect("op", ")")
            return inner
        nxt = self._peek(1)
        if tok.kind == "ident" and nxt is not None and nxt.text == "(" and tok.text != "size":
            return self._function()
        return self._comparison()

    def _function(self) -> Predicate:
        fn = self._next().text
        self._expect("op", "(")
        if fn in ("attribute_exists", "attribute_not_exists"):
            name = self.attribute_name()
            self._expect("op", ")")
            if fn == "attribute_exists":
                return lambda item: name in item
            return lambda item: name not in item
        if fn in ("begins_with", "contains"):
            target = self.operand()
            self._expect("op", ",")
            needle = self.operand()
            self._expect("op", ")")
            if fn == "begins_with":
                return lambda item: _begins_with(target(item), needle(item))
            return lambda item: _contains(target(item), needle(item))
        raise _invalid(f"Invalid function name; function: {fn}")

    def _comparison(self) -> Predicate:
        left = self.operand()
        tok = self._next()
        if tok.kind == "op" and tok.text in _COMPARATORS:
            right = self.operand()
            op = tok.text
            return lambda item: _compare(op, left(item), right(item))
        if tok.kind == "keyword" and tok.text == "BETWEEN":
            low = self.operand()
            self._expect("keyword", "AND")
            high = self.operand()
            return lambda item: _compare(">=", left(item), low(item)) and _compare("<=", left(item), high(item))
        if tok.kind == "keyword" and tok.text == "IN":
            self._expect("op", "(")
            options = [self.operand()]
            while self._accept("op", ","):
                options.append(self.operand())
            self._expect("op", ")")
            return lambda item: any(_compare("=", left(item), o(item)) for o in options)
        raise _invalid(f"Invalid expression: unexpected token {tok.text!r}: {self._expression!r}")

    # -- updates ----------------------------------------------------------------

    def update(self) -> Callable[[Item], Item]:
        assignments: list[tuple[str, Operand]] = []
        removals: list[str] = []
        seen_clauses: set[str] = set()

        while not self.at_end:
            clause = self._expect("keyword").text
            if clause not in ("SET", "REMOVE") or clause in seen_clauses:
                raise _invalid(f"Invalid UpdateExpression: unexpected clause {clause}")
            seen_clauses.add(clause)
            while True:
                if clause == "SET":
                    name = self.attribute_name()
                    self._expect("op", "=")
                    assignments.append((name, self._set_value()))
                else:
                    removals.append(self.attribute_name())
                if not self._accept("op", ","):
                    break

        if not seen_clauses:
            raise _invalid("Invalid UpdateExpression: The expression can not be empty")
        touched = [n for n, _ in assignments] + removals
        if len(touched) != len(set(touched)):
            raise _invalid("Invalid UpdateExpression: Two document paths overlap")

        def apply(item: Item) -> Item:
            original = dict(item)
            updated = dict(item)
            for name, value_fn in assignments:
                value = value_fn(original)
                if value is MISSING:
                    raise _invalid(f"The provided expression refers to an attribute that does not exist in the item: {name}")
                updated[name] = value
            for name in removals:
                updated.pop(name, None)
            return updated

        return apply

    def _set_value(self) -> Operand:
        left = self._set_term()
        tok = self._peek()
        if tok is not None and tok.kind == "op" and tok.text in ("+", "-"):
            self._pos += 1
            right = self._set_term()
            sign = 1 if tok.text == "+" else -1

            def arithmetic(item: Mapping[str, Any]) -> Any:
                a, b = left(item), right(item)
                if a is MISSING or b is MISSING:
                    return MISSING
                try:
                    return a + sign * b
                except TypeError as exc:
                    raise _invalid("Incorrect operand type for operator or function") from exc

            return arithmetic
        return left

    def _set_term(self) -> Operand:
        tok = self._peek()
        nxt = self._peek(1)
        if tok is not None and tok.kind == "ident" and nxt is not None and nxt.text == "(":
            fn = self._next().text
            self._expect("op", "(")
            if fn == "if_not_exists":
                name = self.attribute_name()
                self._expect("op", ",")
                fallback = self._set_value()
                self._expect("op", ")")
                return lambda item: item[name] if name in item else fallback(item)
            if fn == "list_append":
                first = self._set_value()
                self._expect("op", ",")
                second = self._set_value()
                self._expect("op", ")")

                def append(item: Mapping[str, Any]) -> Any:
                    a, b = first(item), second(item)
                    if not isinstance(a, list) or not isinstance(b, list):
                        raise _invalid("Incorrect operand type for operator or function; list_append")
                    return [*a, *b]

                return append
            raise _invalid(f"Invalid function name; function: {fn}")
        return self.operand()


# ---------------------------------------------------------------------------
# Comparison helpers
# ---------------------------------------------------------------------------


def _compare(op: str, a: Any, b: Any) -> bool:
    if a is MISSING or b is MISSING:
        return op == "<>" and not (a is MISSING and b is MISSING)
    try:
        if op == "=":
            return a == b
        if op == "<>":
            return a != b
        if op == "<":
            return a < b
        if op == "<=":
            return a <= b
        if op == ">":
            return a > b
        if op == ">=":
            return a >= b
    except TypeError:
        return False
    return False


def _begins_with(value: Any, prefix: Any) -> bool:
    return isinstance(value, str) and isinstance(prefix, str) and value.startswith(prefix)


def _contains(value: Any, needle: Any) -> bool:
    if isinstance(value, str):
        return isinstance(needle, str) and needle in value
    if isinstance(value, (list, set, frozenset, tuple)):
        return needle in value
    return False


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def compile_condition(
    expression: str,
    names: Mapping[str, str] | None = None,
    values: Mapping[str, Any] | None = None,
) -> Predicate:
    """Compile a key-condition or filter expression into a predicate."""
    parser = _Parser(expression, names, values)
    predicate = parser.condition()
    if not parser.at_end:
        raise _invalid(f"Invalid expression: trailing tokens in {expression!r}")
    return predicate


def compile_update(
    expression: str,
    names: Mapping[str, str] | None = None,
    values: Mapping[str, Any] | None = None,
) -> Callable[[Item], Item]:
    """Compile an update expression into a function returning the updated item."""
    return _Parser(expression, names, values).update()
