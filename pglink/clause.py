"""
Where-clause validation.

Caller-supplied where clauses are spliced into SQL text rather than bound as
parameters, so their text is checked against a small grammar before use::

    expr      := term ((AND | OR) term)*
    term      := '(' expr ')' | predicate
    predicate := operand CMP operand
               | operand [NOT] IN '(' operand (',' operand)* ')'
               | operand LIKE operand
               | operand BETWEEN operand AND operand

``CMP`` is one of ``= > < <= >= !=``. Operands are quoted or bare
identifiers (optionally ``table.column``), single-quoted strings, numbers and
``$n`` placeholders. Anything else (statement separators, comments, casts,
function calls, a second operator inside one predicate) is rejected with
:exc:`~pglink.errors.InvalidClauseError`.
"""

import re
from typing import List, NamedTuple, Optional

from pglink.errors import InvalidClauseError

COMPARISON_OPERATORS = ("=", ">", "<", "<=", ">=", "!=")
KEYWORD_OPERATORS = ("IN", "NOT IN", "LIKE", "BETWEEN")
JOINERS = ("AND", "OR")

_KEYWORDS = {"AND", "OR", "NOT", "IN", "LIKE", "BETWEEN"}

_TOKEN_RE = re.compile(
    r"""
      (?P<ws>\s+)
    | (?P<comment>--|/\*|\*/)
    | (?P<cast>::)
    | (?P<qident>"(?:[^"]|"")+")
    | (?P<string>'(?:[^']|'')*')
    | (?P<param>\$\d+)
    | (?P<number>-?\d+(?:\.\d+)?)
    | (?P<op><=|>=|!=|=|<|>)
    | (?P<word>[A-Za-z_][A-Za-z0-9_]*)
    | (?P<punct>[(),.])
    """,
    re.VERBOSE,
)


class Token(NamedTuple):
    kind: str
    value: str
    position: int


def tokenize(clause: str) -> List[Token]:
    """Split ``clause`` into tokens, rejecting anything outside the token set."""
    tokens: List[Token] = []
    position = 0
    while position < len(clause):
        match = _TOKEN_RE.match(clause, position)
        if match is None:
            char = clause[position]
            if char == ";":
                reason = "statement separator ';' is not allowed"
            elif char in "'\"":
                reason = "unterminated quoted literal"
            else:
                reason = f"unexpected character {char!r}"
            raise InvalidClauseError(reason, clause=clause, position=position)

        kind = match.lastgroup
        value = match.group()
        if kind == "comment":
            raise InvalidClauseError(
                "SQL comments are not allowed", clause=clause, position=position
            )
        if kind == "cast":
            raise InvalidClauseError(
                "type casts are not allowed", clause=clause, position=position
            )
        if kind == "word" and value.upper() in _KEYWORDS:
            tokens.append(Token("keyword", value.upper(), position))
        elif kind != "ws":
            tokens.append(Token(kind, value, position))
        position = match.end()
    return tokens


class _Parser:
    def __init__(self, clause: str, tokens: List[Token]):
        self.clause = clause
        self.tokens = tokens
        self.index = 0

    def parse(self) -> None:
        if not self.tokens:
            raise InvalidClauseError("where clause is empty", clause=self.clause)
        self._expr()
        if self._peek() is not None:
            self._fail("unexpected token", self._peek())

    def _peek(self) -> Optional[Token]:
        if self.index < len(self.tokens):
            return self.tokens[self.index]
        return None

    def _advance(self) -> Token:
        token = self._peek()
        if token is None:
            self._fail("unexpected end of clause")
        self.index += 1
        return token

    def _is(self, kind: str, *values: str) -> bool:
        token = self._peek()
        if token is None or token.kind != kind:
            return False
        return not values or token.value in values

    def _expect(self, kind: str, value: str) -> Token:
        if not self._is(kind, value):
            self._fail(f"expected {value!r}", self._peek())
        return self._advance()

    def _fail(self, reason: str, token: Optional[Token] = None):
        if token is None:
            raise InvalidClauseError(reason, clause=self.clause, position=len(self.clause))
        raise InvalidClauseError(
            f"{reason}: {token.value!r}", clause=self.clause, position=token.position
        )

    def _expr(self) -> None:
        self._term()
        while self._is("keyword", *JOINERS):
            self._advance()
            self._term()

    def _term(self) -> None:
        if self._is("punct", "("):
            self._advance()
            self._expr()
            self._expect("punct", ")")
        else:
            self._predicate()

    def _predicate(self) -> None:
        self._operand()
        token = self._peek()
        if token is None:
            self._fail("missing comparison operator")

        if token.kind == "op":
            self._advance()
            self._operand()
        elif self._is("keyword", "NOT"):
            self._advance()
            self._expect("keyword", "IN")
            self._value_list()
        elif self._is("keyword", "IN"):
            self._advance()
            self._value_list()
        elif self._is("keyword", "LIKE"):
            self._advance()
            self._operand()
        elif self._is("keyword", "BETWEEN"):
            self._advance()
            self._operand()
            # this AND belongs to BETWEEN, not to the enclosing expression
            self._expect("keyword", "AND")
            self._operand()
        else:
            self._fail("missing comparison operator", token)

        if self._is("op") or self._is("keyword", "NOT", "IN", "LIKE", "BETWEEN"):
            self._fail("more than one comparison operator in predicate", self._peek())

    def _value_list(self) -> None:
        self._expect("punct", "(")
        self._operand()
        while self._is("punct", ","):
            self._advance()
            self._operand()
        self._expect("punct", ")")

    def _operand(self) -> None:
        token = self._peek()
        if token is None:
            self._fail("missing operand")
        if token.kind in ("string", "number", "param"):
            self._advance()
            return
        if token.kind in ("qident", "word"):
            self._advance()
            if self._is("punct", "."):
                self._advance()
                if not (self._is("qident") or self._is("word")):
                    self._fail("expected column name after '.'", self._peek())
                self._advance()
            if self._is("punct", "("):
                self._fail("function calls are not allowed", token)
            return
        self._fail("expected an operand", token)


class ClauseValidator:
    """
    Validates free-text where clauses against the operator whitelist.

    Stateless; a single module-level instance backs :func:`validate_clause`.
    """

    operators = COMPARISON_OPERATORS + KEYWORD_OPERATORS
    joiners = JOINERS

    def validate(self, clause: str) -> None:
        """Raise :exc:`InvalidClauseError` unless ``clause`` fits the grammar."""
        if not isinstance(clause, str):
            raise InvalidClauseError(
                f"where clause must be a string, got {type(clause).__name__}"
            )
        _Parser(clause, tokenize(clause)).parse()

    def is_valid(self, clause: str) -> bool:
        try:
            self.validate(clause)
        except InvalidClauseError:
            return False
        return True


_validator = ClauseValidator()


def validate_clause(clause: str) -> None:
    """Validate ``clause``; see :class:`ClauseValidator`."""
    _validator.validate(clause)
