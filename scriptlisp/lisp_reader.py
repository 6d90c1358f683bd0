"""
Lisp reader: page-variable extraction, tokenizer and s-expression parser.

Produces plain runtime values (see lisp_datatypes): lists for `( )`,
Vector for `[ ]`, `(new-map (list k v) ...)` for `{ }`, `(quote x)` for
`'x`, Symbol, Keyword, str, int, float, None and True.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterator, List, Optional, Tuple

from scriptlisp.lisp_datatypes import ParseError, Symbol, Keyword, Vector, QUOTE

NEW_MAP = Symbol("new-map")
LIST = Symbol("list")

TOKEN_RE = re.compile(
    r"(?P<ws>[\s,]+)"                       # whitespace, commas are whitespace
    r"|(?P<comment>;[^\n]*)"                # line comment
    r"|(?P<open>[(\[{])"
    r"|(?P<close>[)\]}])"
    r"|(?P<quote>')"
    r'|(?P<string>")'
    r"|(?P<atom>[^\s,()\[\]{}'\";]+)",
)

INT_RE = re.compile(r"[+-]?\d+\Z")
FLOAT_RE = re.compile(r"[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?\Z")
NUMBERISH_RE = re.compile(r"[+-]?\.?\d")

CLOSERS = {"(": ")", "[": "]", "{": "}"}

ESCAPES = {'"': '"', "\\": "\\", "n": "\n", "t": "\t", "r": "\r"}

Token = Tuple[str, Any, int]


def line_col(source: str, offset: int) -> Tuple[int, int]:
    line = source.count("\n", 0, offset) + 1
    col = offset - (source.rfind("\n", 0, offset) + 1) + 1
    return line, col


def _error(source: str, message: str, offset: int) -> ParseError:
    line, col = line_col(source, offset)
    return ParseError(message, offset, line, col)

# =================================================================
# Page variables
# =================================================================

def extract_page_vars(source: str) -> Tuple[Dict[str, str], str]:
    """Split a leading `<!-- ... -->` (or `;<!-- ... ;-->`) block off `source`.

    Returns (vars, body). The block is replaced by the same number of
    newlines so offsets reported for the body still match the original text.
    """
    stripped = source.lstrip()
    lead = len(source) - len(stripped)

    if stripped.startswith("<!--"):
        end = stripped.find("-->", 4)
        if end < 0:
            raise _error(source, "unterminated page variables block", lead)
        inner = stripped[4:end]
        block_end = lead + end + 3
        lines = inner.splitlines()
    elif stripped.startswith(";<!--"):
        first_nl = stripped.find("\n")
        if first_nl < 0:
            raise _error(source, "unterminated page variables block", lead)
        lines = []
        pos = first_nl + 1
        while True:
            nl = stripped.find("\n", pos)
            line = stripped[pos:] if nl < 0 else stripped[pos:nl]
            if line.strip().startswith(";-->"):
                block_end = lead + (len(stripped) if nl < 0 else nl)
                break
            if not line.lstrip().startswith(";"):
                raise _error(source, "page variable lines must start with ';'", lead + pos)
            lines.append(line.lstrip()[1:])
            if nl < 0:
                raise _error(source, "unterminated page variables block", lead)
            pos = nl + 1
    else:
        return {}, source

    page_vars: Dict[str, str] = {}
    for line in lines:
        line = line.strip()
        if not line:
            continue
        parts = line.split(None, 1)
        page_vars[parts[0]] = parts[1].strip() if len(parts) > 1 else ""

    # Newlines stay and everything else in the block is blanked
    consumed = source[:block_end]
    body = re.sub(r"[^\n]", " ", consumed) + source[block_end:]
    return page_vars, body

# =================================================================
# Tokenizer
# =================================================================

def _read_string(source: str, start: int) -> Tuple[str, int]:
    """Read a string whose opening quote is at `start`; return (text, end offset)."""
    out = []
    i = start + 1
    n = len(source)
    while i < n:
        ch = source[i]
        if ch == '"':
            return "".join(out), i + 1
        if ch == "\\" and i + 1 < n:
            nxt = source[i + 1]
            if nxt in ESCAPES:
                out.append(ESCAPES[nxt])
            else:
                # Unknown escapes belong to the host's format syntax: keep them.
                out.append(ch + nxt)
            i += 2
            continue
        out.append(ch)
        i += 1
    raise _error(source, "unterminated string", start)


def _atom(source: str, text: str, offset: int) -> Any:
    if INT_RE.match(text):
        return int(text)
    if FLOAT_RE.match(text):
        return float(text)
    if NUMBERISH_RE.match(text):
        raise _error(source, f"invalid numeric literal {text!r}", offset)
    if text.startswith(":") and len(text) > 1:
        return Keyword(text[1:])
    if text == "nil":
        return None
    if text in ("true", "t"):
        return True
    return Symbol(text)


def lex(source: str) -> Iterator[Token]:
    """Yields (kind, value, offset) tuples; kinds: open, close, quote, value."""
    pos = 0
    n = len(source)
    while pos < n:
        m = TOKEN_RE.match(source, pos)
        if m is None:
            raise _error(source, f"unexpected character {source[pos]!r}", pos)
        kind = m.lastgroup
        if kind in ("ws", "comment"):
            pos = m.end()
            continue
        if kind == "string":
            text, pos = _read_string(source, pos)
            yield "value", text, m.start()
            continue
        if kind == "atom":
            yield "value", _atom(source, m.group(kind), pos), pos
        else:
            yield kind, m.group(kind), pos
        pos = m.end()

# =================================================================
# Parser
# =================================================================

class TokenStream:
    def __init__(self, source: str):
        self.source = source
        self.tokens: List[Token] = list(lex(source))
        self.index = 0

    def peek(self) -> Optional[Token]:
        if self.index < len(self.tokens):
            return self.tokens[self.index]
        return None

    def advance(self) -> Token:
        tok = self.tokens[self.index]
        self.index += 1
        return tok

    def at_end(self) -> bool:
        return self.index >= len(self.tokens)

    def parse_expr(self) -> Any:
        tok = self.peek()
        if tok is None:
            raise _error(self.source, "unexpected end of input", len(self.source))
        kind, value, offset = self.advance()
        if kind == "value":
            return value
        if kind == "quote":
            if self.at_end():
                raise _error(self.source, "quote with nothing to quote", offset)
            return [QUOTE, self.parse_expr()]
        if kind == "open":
            items = self._parse_until(CLOSERS[value], offset)
            if value == "(":
                return items
            if value == "[":
                return Vector(items)
            return self._map_literal(items, offset)
        raise _error(self.source, f"unexpected {value!r}", offset)

    def _parse_until(self, closer: str, start: int) -> List[Any]:
        items = []
        while True:
            tok = self.peek()
            if tok is None:
                raise _error(self.source, f"missing {closer!r}", start)
            kind, value, offset = tok
            if kind == "close":
                self.advance()
                if value != closer:
                    raise _error(self.source, f"expected {closer!r} but found {value!r}", offset)
                return items
            items.append(self.parse_expr())

    def _map_literal(self, items: List[Any], offset: int) -> List[Any]:
        if len(items) % 2:
            raise _error(self.source, "map literal needs an even number of forms", offset)
        pairs = []
        for key, value in zip(items[0::2], items[1::2]):
            if isinstance(key, Symbol):
                key = Keyword(key.name)
            pairs.append([LIST, key, value])
        return [NEW_MAP, *pairs]


def read_all(source: str) -> List[Any]:
    """Parse every top-level form in `source`."""
    stream = TokenStream(source)
    forms = []
    while not stream.at_end():
        kind, value, offset = stream.peek()
        if kind == "close":
            raise _error(source, f"unbalanced {value!r}", offset)
        forms.append(stream.parse_expr())
    return forms


def read(source: str) -> Any:
    """Parse exactly one form (the first one); Nil for empty input."""
    forms = read_all(source)
    return forms[0] if forms else None


def read_program(source: str) -> Tuple[Dict[str, str], List[Any]]:
    """Page variables plus top-level forms: what the entry points consume."""
    page_vars, body = extract_page_vars(source)
    return page_vars, read_all(body)
