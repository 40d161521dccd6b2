"""Traefik router rule parsing.

A rule is a boolean expression over matchers, e.g.

    Host(`a.example.com`) && (PathPrefix(`/api`) || Headers(`X-Env`, `dev`))

Only Host-like matchers produce hostnames. Unknown matchers are accepted and
ignored, so a Path() next to a Host() still yields the host. Matchers under a
negation never produce hostnames: ``!Host(`x`)`` routes everything *but* x.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

from .errors import RuleParseError
from .models import normalize_name

RULE_SYNTAX_V2 = "v2"
RULE_SYNTAX_V3 = "v3"

# Matchers whose arguments are literal hostnames.
HOST_MATCHERS = {
    RULE_SYNTAX_V2: {"host", "hostheader"},
    RULE_SYNTAX_V3: {"host"},
}

_QUOTES = "`\"'"
_IDENT_RE = re.compile(r"[A-Za-z][A-Za-z0-9]*")
_LABEL_RE = re.compile(r"^(?!-)[a-z0-9_-]{1,63}(?<!-)$")


@dataclass(frozen=True)
class _Token:
    kind: str  # ident, string, (, ), ",", &&, ||, !, end
    value: str
    pos: int


def _tokenize(rule: str) -> List[_Token]:
    tokens: List[_Token] = []
    i = 0
    n = len(rule)
    while i < n:
        ch = rule[i]
        if ch.isspace():
            i += 1
        elif ch in "(),!":
            tokens.append(_Token(ch, ch, i))
            i += 1
        elif rule.startswith("&&", i) or rule.startswith("||", i):
            tokens.append(_Token(rule[i : i + 2], rule[i : i + 2], i))
            i += 2
        elif ch in _QUOTES:
            end = rule.find(ch, i + 1)
            if end == -1:
                raise ValueError(f"unterminated string starting at {i}")
            tokens.append(_Token("string", rule[i + 1 : end], i))
            i = end + 1
        else:
            match = _IDENT_RE.match(rule, i)
            if not match:
                raise ValueError(f"unexpected character {ch!r} at {i}")
            tokens.append(_Token("ident", match.group(0), i))
            i = match.end()
    tokens.append(_Token("end", "", n))
    return tokens


class _Parser:
    """Recursive descent over: or := and ('||' and)*; and := unary ('&&' unary)*."""

    def __init__(self, tokens: List[_Token], syntax: str):
        self._tokens = tokens
        self._pos = 0
        self._syntax = syntax
        self._host_matchers = HOST_MATCHERS[syntax]
        self.hosts: List[str] = []

    def _peek(self) -> _Token:
        return self._tokens[self._pos]

    def _next(self) -> _Token:
        token = self._tokens[self._pos]
        self._pos += 1
        return token

    def _expect(self, kind: str) -> _Token:
        token = self._next()
        if token.kind != kind:
            found = token.value or "end of rule"
            raise ValueError(f"expected {kind!r} at {token.pos}, found {found!r}")
        return token

    def parse(self) -> None:
        if self._peek().kind == "end":
            raise ValueError("empty rule")
        self._or(negated=False)
        self._expect("end")

    def _or(self, negated: bool) -> None:
        self._and(negated)
        while self._peek().kind == "||":
            self._next()
            self._and(negated)

    def _and(self, negated: bool) -> None:
        self._unary(negated)
        while self._peek().kind == "&&":
            self._next()
            self._unary(negated)

    def _unary(self, negated: bool) -> None:
        token = self._peek()
        if token.kind == "!":
            self._next()
            self._unary(not negated)
        elif token.kind == "(":
            self._next()
            self._or(negated)
            self._expect(")")
        elif token.kind == "ident":
            self._matcher(negated)
        else:
            found = token.value or "end of rule"
            raise ValueError(f"unexpected {found!r} at {token.pos}")

    def _matcher(self, negated: bool) -> None:
        name = self._next().value
        self._expect("(")
        args: List[str] = []
        if self._peek().kind != ")":
            args.append(self._expect("string").value)
            while self._peek().kind == ",":
                self._next()
                args.append(self._expect("string").value)
        self._expect(")")

        if name.lower() not in self._host_matchers:
            return
        if not args:
            raise ValueError(f"{name}() needs at least one hostname")
        if self._syntax == RULE_SYNTAX_V3 and len(args) > 1:
            raise ValueError(f"{name}() takes a single hostname with v3 rule syntax")
        if not negated:
            self.hosts.extend(args)


def _valid_hostname(host: str) -> bool:
    if not host or len(host) > 253:
        return False
    return all(_LABEL_RE.match(label) for label in host.split("."))


def parse_hosts(rule: str, syntax: str = RULE_SYNTAX_V3, router: str = "") -> Set[str]:
    """Return every hostname a rule routes.

    Raises RuleParseError when the expression is malformed or a Host()
    argument is not a hostname. Hostnames are canonicalized (lowercase,
    trailing dot stripped).
    """
    syntax = (syntax or RULE_SYNTAX_V3).lower()
    if syntax not in HOST_MATCHERS:
        raise RuleParseError(rule, f"unknown rule syntax {syntax!r}", router)
    try:
        parser = _Parser(_tokenize(rule or ""), syntax)
        parser.parse()
    except ValueError as e:
        raise RuleParseError(rule, str(e), router) from None

    hosts: Set[str] = set()
    for raw in parser.hosts:
        host = normalize_name(raw)
        if not _valid_hostname(host):
            raise RuleParseError(rule, f"invalid hostname {raw!r}", router)
        hosts.add(host)
    return hosts


def try_parse_hosts(
    rule: str, syntax: str = RULE_SYNTAX_V3, router: str = ""
) -> Tuple[Set[str], Optional[RuleParseError]]:
    """Like parse_hosts, but returns (empty set, error) instead of raising."""
    try:
        return parse_hosts(rule, syntax, router), None
    except RuleParseError as e:
        return set(), e
