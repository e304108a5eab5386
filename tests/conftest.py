"""Shared fixtures for the BFQ test-suite."""

from __future__ import annotations

from pathlib import Path
import sys
from typing import Callable, Iterator, List, Optional, Tuple

import pytest

_ROOT = Path(__file__).resolve().parents[1]
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from interpreter import Interpreter  # noqa: E402


EXT_DIR = _ROOT / "ext"


def _feeder(data: bytes) -> Callable[[], Optional[int]]:
    remaining: Iterator[int] = iter(data)
    return lambda: next(remaining, None)


@pytest.fixture
def run_program() -> Callable[..., Tuple[Interpreter, bytes]]:
    """Run a program with captured output and scripted input.

    Returns the interpreter (for inspecting the tape and function table) and
    the bytes written to the output sink.
    """

    def _run(code: str, data: bytes = b"", **kwargs) -> Tuple[Interpreter, bytes]:
        written: List[bytes] = []
        kwargs.setdefault("seed", 0)
        interpreter = Interpreter(
            source=code,
            output_sink=written.append,
            input_provider=_feeder(data),
            **kwargs,
        )
        interpreter.run()
        return interpreter, b"".join(written)

    return _run


@pytest.fixture
def make_interpreter() -> Callable[..., Interpreter]:
    def _make(code: str, data: bytes = b"", **kwargs) -> Interpreter:
        kwargs.setdefault("seed", 0)
        kwargs.setdefault("output_sink", lambda _data: None)
        return Interpreter(source=code, input_provider=_feeder(data), **kwargs)

    return _make
