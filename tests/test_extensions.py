"""Extension loading, hooks, step rules and extension-provided commands."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import EXT_DIR
from extensions import (
    BFQExtensionError,
    ExtensionAPI,
    RuntimeServices,
    gather_extension_paths,
    load_runtime_services,
)
from interpreter import BFQRuntimeError


SEVEN_EXTENSION = '''
BFQ_EXTENSION_NAME = "seven"


def bfq_register(ext):
    ext.metadata(name="seven", version="0.1.0")

    @ext.command("7")
    def _seven(interpreter, frame):
        interpreter.tape.set(7)
'''


def _write(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def test_extension_can_claim_an_unassigned_digit(tmp_path: Path, run_program) -> None:
    services = load_runtime_services([str(_write(tmp_path, "seven.py", SEVEN_EXTENSION))])

    _, out = run_program("7.", services=services)

    assert out == b"\x07"
    assert [meta.name for meta in services.metadata] == ["seven"]


def test_unclaimed_digit_stays_fatal(tmp_path: Path, run_program) -> None:
    services = load_runtime_services([str(_write(tmp_path, "seven.py", SEVEN_EXTENSION))])
    with pytest.raises(BFQRuntimeError):
        run_program("1", services=services)


def test_builtin_commands_cannot_be_claimed() -> None:
    api = ExtensionAPI(services=RuntimeServices(), ext_name="greedy")
    with pytest.raises(BFQExtensionError):
        api.register_command("5", lambda interpreter, frame: None)


def test_a_digit_can_only_be_claimed_once() -> None:
    services = RuntimeServices()
    ExtensionAPI(services=services, ext_name="first").register_command("1", lambda i, f: None)
    with pytest.raises(BFQExtensionError, match="first"):
        ExtensionAPI(services=services, ext_name="second").register_command("1", lambda i, f: None)


def test_unknown_event_is_rejected() -> None:
    api = ExtensionAPI(services=RuntimeServices(), ext_name="x")
    with pytest.raises(BFQExtensionError):
        api.on_event("after_statement", lambda *args: None)


def test_bfqx_pointer_file_lists_extensions(tmp_path: Path) -> None:
    seven = _write(tmp_path, "seven.py", SEVEN_EXTENSION)
    pointer = _write(tmp_path, "all.bfqx", "# extensions\nseven.py  # claims 7\n\n")

    assert gather_extension_paths([str(pointer)]) == [str(seven.resolve())]


def test_extension_without_register_is_rejected(tmp_path: Path) -> None:
    path = _write(tmp_path, "empty.py", "X = 1\n")
    with pytest.raises(BFQExtensionError, match="bfq_register"):
        load_runtime_services([str(path)])


def test_extension_api_version_mismatch(tmp_path: Path) -> None:
    path = _write(tmp_path, "future.py", "BFQ_EXTENSION_API_VERSION = 99\ndef bfq_register(ext):\n    pass\n")
    with pytest.raises(BFQExtensionError, match="requires API 99"):
        load_runtime_services([str(path)])


def test_missing_extension_file(tmp_path: Path) -> None:
    with pytest.raises(BFQExtensionError, match="not found"):
        load_runtime_services([str(tmp_path / "nope.py")])


def test_events_fire_in_order(run_program) -> None:
    services = RuntimeServices()
    api = ExtensionAPI(services=services, ext_name="spy")
    seen = []
    api.on_event("program_start", lambda interp: seen.append("start"))
    api.on_event("frame_enter", lambda interp, frame: seen.append(f"enter {frame.name}"))
    api.on_event("frame_exit", lambda interp, frame: seen.append(f"exit {frame.name}"))
    api.on_event("program_end", lambda interp, output: seen.append(f"end {output!r}"))

    run_program("a+aa.", services=services)

    assert seen == [
        "start",
        "enter <main>",
        "enter <function 'a'>",
        "exit <function 'a'>",
        "exit <main>",
        "end b'\\x01'",
    ]


def test_on_error_sees_the_failure(run_program) -> None:
    services = RuntimeServices()
    errors = []
    ExtensionAPI(services=services, ext_name="spy").on_event("on_error", lambda interp, exc: errors.append(exc))

    with pytest.raises(BFQRuntimeError) as excinfo:
        run_program("1", services=services)

    assert errors == [excinfo.value]


def test_failing_hook_is_wrapped(run_program) -> None:
    services = RuntimeServices()

    def _boom(interp):
        raise ValueError("boom")

    ExtensionAPI(services=services, ext_name="bad").on_event("program_start", _boom)

    with pytest.raises(BFQRuntimeError) as excinfo:
        run_program("+", services=services)
    assert excinfo.value.rewrite_rule == "EXT"
    assert "boom" in excinfo.value.message


def test_failing_step_rule_is_wrapped(run_program) -> None:
    services = RuntimeServices()

    @ExtensionAPI(services=services, ext_name="bad").every_n_steps(2)
    def _boom(interp, ctx):
        raise KeyError(ctx.position)

    with pytest.raises(BFQRuntimeError) as excinfo:
        run_program("+++", services=services)
    assert excinfo.value.rewrite_rule == "EXT"


def test_step_rules_see_positions(run_program) -> None:
    services = RuntimeServices()
    seen = []
    ExtensionAPI(services=services, ext_name="spy").every_n_steps(1, lambda interp, ctx: seen.append((ctx.frame_name, ctx.position, ctx.rule)))

    run_program("+>", services=services)

    assert seen == [("<main>", 0, "+"), ("<main>", 1, ">")]


def test_watchdog_stops_runaway_programs(monkeypatch: pytest.MonkeyPatch, run_program) -> None:
    monkeypatch.setenv("BFQ_MAX_STEPS", "100")
    services = load_runtime_services([str(EXT_DIR / "watchdog.py")])

    with pytest.raises(BFQRuntimeError) as excinfo:
        run_program("+[]", services=services)

    assert excinfo.value.rewrite_rule == "WATCHDOG"
    assert "100" in excinfo.value.message


def test_watchdog_lets_short_programs_finish(monkeypatch: pytest.MonkeyPatch, run_program) -> None:
    monkeypatch.setenv("BFQ_MAX_STEPS", "100")
    services = load_runtime_services([str(EXT_DIR / "watchdog.py")])

    _, out = run_program("+++[-.]", services=services)

    assert out == bytes([2, 1, 0])
