"""Command-line entry point and REPL."""

from __future__ import annotations

from pathlib import Path
from typing import List

import pytest

import bfq
from conftest import EXT_DIR


def _feed_input(monkeypatch: pytest.MonkeyPatch, lines: List[str]) -> None:
    pending = list(lines)

    def _input(prompt: str = "") -> str:
        if not pending:
            raise EOFError
        return pending.pop(0)

    monkeypatch.setattr("builtins.input", _input)


def test_literal_source(capsysbinary) -> None:
    assert bfq.run_cli(["-source", "+" * 65 + "."]) == 0
    assert capsysbinary.readouterr().out == b"A"


def test_source_file(tmp_path: Path, capsysbinary) -> None:
    program = tmp_path / "hello.bfq"
    program.write_text('"Hi"<.>.', encoding="utf-8")

    assert bfq.run_cli([str(program)]) == 0
    assert capsysbinary.readouterr().out == b"Hi"


def test_missing_file(tmp_path: Path, capsysbinary) -> None:
    assert bfq.run_cli([str(tmp_path / "missing.bfq")]) == 1
    assert b"Failed to read" in capsysbinary.readouterr().err


def test_mismatched_brackets_report(capsysbinary) -> None:
    assert bfq.run_cli(["-source", "+]"]) == 1
    err = capsysbinary.readouterr().err
    assert err.startswith(b"ParseError: Unmatched ']'")
    assert b"<string>:1:2" in err


def test_runtime_error_prints_traceback(capsysbinary) -> None:
    assert bfq.run_cli(["-source", "+1", "--traceback-json"]) == 1
    err = capsysbinary.readouterr().err
    assert b"Traceback (most recent call last):" in err
    assert b"(rule: UNIMPLEMENTED)" in err
    assert b'"failing_step_index"' in err


def test_source_flag_requires_program(capsysbinary) -> None:
    assert bfq.run_cli(["-source"]) == 1


def test_seed_makes_random_output_repeatable(capsysbinary) -> None:
    outputs = []
    for _ in range(2):
        assert bfq.run_cli(["-source", "?.?.?.", "--seed", "3"]) == 0
        outputs.append(capsysbinary.readouterr().out)
    assert outputs[0] == outputs[1]
    assert len(outputs[0]) == 3


def test_max_depth_flag(capsysbinary) -> None:
    assert bfq.run_cli(["-source", ";'", "--max-depth", "3"]) == 1
    assert b"RecursionLimitExceeded" in capsysbinary.readouterr().err


def test_extension_flag(monkeypatch: pytest.MonkeyPatch, capsysbinary) -> None:
    monkeypatch.setenv("BFQ_MAX_STEPS", "50")
    assert bfq.run_cli(["-source", "+[]", "--ext", str(EXT_DIR / "watchdog.py")]) == 1
    assert b"(rule: WATCHDOG)" in capsysbinary.readouterr().err


def test_bad_extension_flag(tmp_path: Path, capsysbinary) -> None:
    assert bfq.run_cli(["-source", "+", "--ext", str(tmp_path / "none.py")]) == 1
    assert b"ExtensionError" in capsysbinary.readouterr().err


def test_repl_keeps_state_between_entries(monkeypatch: pytest.MonkeyPatch, capsysbinary) -> None:
    _feed_input(monkeypatch, ["+++.", "[", "-.", "]", ""])

    assert bfq.run_cli([]) == 0

    out = capsysbinary.readouterr().out
    assert b"\x03" in out
    assert b"\x02\x01\x00" in out


def test_repl_survives_errors(monkeypatch: pytest.MonkeyPatch, capsysbinary) -> None:
    _feed_input(monkeypatch, ["a++a", "1", "]", "a."])

    assert bfq.run_cli([]) == 0

    captured = capsysbinary.readouterr()
    assert b"Traceback" in captured.err
    assert b"ParseError" in captured.err
    assert b"\x02" in captured.out
