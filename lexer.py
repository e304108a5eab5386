from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple


class BFQError(Exception):
    """Base class for interpreter errors."""


class BFQParseError(BFQError):
    """Raised when building the pairing map fails."""


class MismatchedBrackets(BFQParseError):
    """Raised for a loop-closer with no pending opener."""

    def __init__(self, position: int, line: int, column: int, filename: str) -> None:
        super().__init__(
            f"Unmatched ']' with no opening '[' at {filename}:{line}:{column} (position {position})"
        )
        self.position = position
        self.line = line
        self.column = column
        self.filename = filename


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


# Characters that are never function identifiers
RESERVED_CHARS = "<>{}[]()+-*/!.,\\#?$&@\"`~|;^:'_%=0123456789 \n\t"
# Characters executed while basic-restricted mode is active
BASIC_ALLOWED = "<>+-[].,_ \n\t"

COMMENT = "^"
QUOTE = '"'
CONDITIONAL = "%"
ZERO = "0"
LOOP_OPEN = "["
LOOP_CLOSE = "]"


def locate(code: Sequence[str], index: int, filename: str) -> SourceLocation:
    """Translate a buffer position into a line/column location."""
    line = 1
    column = 1
    for ch in code[:index]:
        if ch == "\n":
            line += 1
            column = 1
        else:
            column += 1
    statement = code[index] if 0 <= index < len(code) else ""
    return SourceLocation(file=filename, line=line, column=column, statement=statement)


class PairingMap:
    """Immutable one-to-one map between opener and closer positions."""

    def __init__(self, pairs: Optional[Dict[int, int]] = None) -> None:
        self._by_left: Dict[int, int] = dict(pairs or {})
        self._by_right: Dict[int, int] = {r: l for l, r in self._by_left.items()}

    def get_by_left(self, position: int) -> Optional[int]:
        return self._by_left.get(position)

    def get_by_right(self, position: int) -> Optional[int]:
        return self._by_right.get(position)

    def offset(self, start: int) -> "PairingMap":
        # Keep only pairs that lie entirely at or beyond start, rebased to 0.
        return PairingMap(
            {l - start: r - start for l, r in self._by_left.items() if l >= start and r >= start}
        )

    def __iter__(self) -> Iterator[Tuple[int, int]]:
        return iter(sorted(self._by_left.items()))

    def __len__(self) -> int:
        return len(self._by_left)

    def __contains__(self, position: object) -> bool:
        return position in self._by_left or position in self._by_right

    def __eq__(self, other: object) -> bool:
        return isinstance(other, PairingMap) and self._by_left == other._by_left

    def __repr__(self) -> str:
        return f"PairingMap({self._by_left!r})"


class PairScanner:
    def __init__(self, code: Sequence[str], filename: str = "<string>") -> None:
        self.code = code
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    def scan(self) -> PairingMap:
        pairs: Dict[int, int] = {}
        brackets: List[int] = []
        last_comment: Optional[int] = None
        last_quote: Optional[int] = None
        last_percent: Optional[int] = None
        last_zero: Optional[int] = None
        code = self.code
        n = len(code)
        _advance = self._advance

        while self.index < n:
            i = self.index
            ch = code[i]
            # A comment marker always toggles, even inside a quote.
            if ch == COMMENT:
                if last_comment is None:
                    last_comment = i
                else:
                    pairs[last_comment] = i
                    last_comment = None
                _advance()
                continue
            if last_comment is not None:
                _advance()
                continue
            if ch == QUOTE:
                if last_quote is None:
                    last_quote = i
                else:
                    pairs[last_quote] = i
                    last_quote = None
                _advance()
                continue
            if last_quote is not None:
                _advance()
                continue
            if ch == CONDITIONAL:
                if last_percent is None:
                    last_percent = i
                else:
                    pairs[last_percent] = i
                    last_percent = None
            elif ch == ZERO:
                if last_zero is None:
                    last_zero = i
                else:
                    pairs[last_zero] = i
                    last_zero = None
            elif ch == LOOP_OPEN:
                brackets.append(i)
            elif ch == LOOP_CLOSE:
                if not brackets:
                    raise MismatchedBrackets(i, self.line, self.column, self.filename)
                pairs[brackets.pop()] = i
            _advance()
        return PairingMap(pairs)

    def _advance(self) -> None:
        if self.code[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1


def build_pairing_map(code: Sequence[str], filename: str = "<string>") -> PairingMap:
    return PairScanner(code, filename).scan()
