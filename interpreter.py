from __future__ import annotations
import json
import os
import sys
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

import numpy as np

from lexer import (
    BASIC_ALLOWED,
    RESERVED_CHARS,
    BFQError,
    BFQParseError,
    PairingMap,
    SourceLocation,
    build_pairing_map,
    locate,
)
from extensions import HookRegistry, RuntimeServices, StepContext, build_default_services
from tape import Tape, cell_round


NICE_LINE = b"Nice.\n"
DEFAULT_MAX_DEPTH = 200
DEFAULT_HISTORY = 10000


class BFQRuntimeError(BFQError):
    """Raised for fatal dispatch faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rewrite_rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rewrite_rule = rewrite_rule
        self.step_index: Optional[int] = None


class RecursionLimitExceeded(BFQRuntimeError):
    """Raised when nested invocations exceed the configured depth."""


class TerminateSignal(Exception):
    pass


class Mode(Enum):
    NORMAL = "normal"
    BASIC = "basic"
    NICE = "nice"


FunctionEntry = Tuple[List[str], int]


class FunctionTable:
    """Function bodies keyed by their single-character identifier."""

    def __init__(self) -> None:
        self.funcs: Dict[str, FunctionEntry] = {}
        self.creating: Set[str] = set()

    def begin(self, name: str, start: int) -> None:
        self.funcs[name] = ([], start)
        self.creating.add(name)

    def put(self, ch: str) -> None:
        # Every open definition receives the character.
        for name in self.creating:
            self.funcs[name][0].append(ch)

    def end(self, name: str) -> None:
        self.creating.discard(name)

    def exists(self, name: str) -> bool:
        return name in self.funcs

    def is_creating(self, name: str) -> bool:
        return name in self.creating

    def any_creating(self) -> bool:
        return bool(self.creating)

    def get(self, name: str) -> Optional[FunctionEntry]:
        if name in self.creating:
            return None
        return self.funcs.get(name)

    def copy_fn(self, src: str, dst: str) -> None:
        entry = self.funcs.get(src)
        if entry is not None:
            self.funcs[dst] = (list(entry[0]), entry[1])

    def snapshot(self) -> Dict[str, str]:
        return {
            name: ("<defining> " if name in self.creating else "") + "".join(body)
            for name, (body, _start) in self.funcs.items()
        }


@dataclass
class Frame:
    name: str
    frame_id: str
    code: List[str]
    pairs: PairingMap
    filename: str
    depth: int
    index: int = 0
    mode: Mode = Mode.NORMAL


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    position: Optional[int]
    statement: Optional[str]
    rewrite_record: Optional[Dict[str, Any]]
    tape_snapshot: Optional[str]


class StateLogger:
    def __init__(self, verbose: bool, history: int = DEFAULT_HISTORY) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.next_state_index = 0
        self.last_state_id = "seed"
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        position: Optional[int],
        statement: Optional[str],
        rewrite_record: Optional[Dict[str, Any]] = None,
        tape_snapshot: Optional[str] = None,
    ) -> StateEntry:
        rewrite = {} if rewrite_record is None else rewrite_record
        if "from_state_id" not in rewrite:
            rewrite["from_state_id"] = self.last_state_id
        step_index = self.next_state_index
        state_id = f"s_{step_index:06d}"
        rewrite["to_state_id"] = state_id
        entry = StateEntry(
            step_index=step_index,
            state_id=state_id,
            frame_id=frame.frame_id if frame else None,
            position=position,
            statement=statement,
            rewrite_record=rewrite,
            tape_snapshot=tape_snapshot,
        )
        self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.last_state_id = state_id
        self.next_state_index += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)

    def forget_frame(self, frame_id: str) -> None:
        self.frame_last_entry.pop(frame_id, None)


def _read_stdin_byte() -> Optional[int]:
    stream = getattr(sys.stdin, "buffer", sys.stdin)
    try:
        data = stream.read(1)
    except (OSError, ValueError):
        return None
    if isinstance(data, str):
        data = data.encode("utf-8")
    return data[0] if data else None


def _write_stdout(data: bytes) -> None:
    stream = getattr(sys.stdout, "buffer", None)
    if stream is None:
        sys.stdout.write(data.decode("latin-1"))
        sys.stdout.flush()
        return
    stream.write(data)
    stream.flush()


# Command handlers return the next position, or None to advance by one.
CommandHandler = Callable[[Frame], Optional[int]]


class Interpreter:
    def __init__(
        self,
        *,
        source: str,
        filename: str = "<string>",
        verbose: bool = False,
        services: Optional[RuntimeServices] = None,
        input_provider: Optional[Callable[[], Optional[int]]] = None,
        output_sink: Optional[Callable[[bytes], None]] = None,
        rng: Optional[np.random.Generator] = None,
        seed: Optional[int] = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
        history: int = DEFAULT_HISTORY,
    ) -> None:
        self.source = source
        normalized_filename = filename if filename.startswith("<") else os.path.abspath(filename)
        self.filename = normalized_filename
        self.verbose = verbose
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.input_provider = input_provider or _read_stdin_byte
        self.output_sink = output_sink or _write_stdout
        self.max_depth = max_depth

        self.tape = Tape(rng if rng is not None else np.random.default_rng(seed))
        self.functions = FunctionTable()
        self.output = bytearray()

        self.logger = StateLogger(verbose=verbose, history=history)
        self.logger.record(frame=None, position=None, statement="<seed>", rewrite_record={"rule": "SEED"})
        self.call_stack: List[Frame] = []
        self.frame_counter = 0
        self.commands: Dict[str, CommandHandler] = self._build_command_table()

    def _build_command_table(self) -> Dict[str, CommandHandler]:
        tape = self.tape
        return {
            ">": lambda f: tape.next(),
            "<": lambda f: tape.prev(),
            "{": self._delete_left,
            "}": self._delete_right,
            "(": lambda f: tape.insert_left(0),
            ")": lambda f: tape.insert_right(0),
            "+": lambda f: tape.set(tape.get() + 1),
            "-": lambda f: tape.set(tape.get() - 1),
            "*": lambda f: tape.set(tape.get() * tape.get_next()),
            "/": self._divide,
            "!": self._not,
            ".": lambda f: self._write(bytes([tape.get()])),
            ",": self._read,
            "[": self._loop_open,
            "]": self._loop_close,
            "\\": self._break,
            "#": lambda f: f.index + 2 if tape.get() != tape.get_next() else None,
            "?": lambda f: tape.set(tape.random_byte()),
            "$": lambda f: tape.next() if tape.random_bit() else tape.prev(),
            "&": lambda f: f.index + 2 if tape.random_bit() else None,
            "@": self._terminate,
            '"': self._string,
            "`": lambda f: tape.set(tape.get() << 1),
            "~": lambda f: tape.set(tape.get() >> 1),
            "|": lambda f: 0,
            ";": lambda f: self._write(self.source.encode("utf-8")),
            "^": self._comment,
            ":": lambda f: tape.set_next(tape.get()),
            "'": self._quine,
            "_": self._toggle_basic,
            "%": self._conditional,
            "=": self._stray_assignment,
            "0": self._zero,
            "2": lambda f: tape.expand_2(),
            "3": lambda f: tape.expand_3(),
            "4": lambda f: tape.randomize(),
            "5": lambda f: tape.set(cell_round(tape.get())),
            "6": self._enter_nice,
            "8": self._eights,
            "9": lambda f: None,
            " ": lambda f: None,
            "\n": lambda f: None,
            "\t": lambda f: None,
        }

    def run(self) -> None:
        self.run_source(self.source, name="<main>")

    def run_source(self, text: str, *, name: str = "<main>") -> None:
        """Execute ``text`` against this interpreter's tape, functions and output."""
        # Frames left behind by a failed run are only kept for its traceback.
        self.call_stack = []
        code = list(text)
        pairs = build_pairing_map(code, self.filename)
        self.source = text
        self._emit_event("program_start", self)
        try:
            self._execute(code, pairs, name=name, filename=self.filename)
        except BFQRuntimeError as error:
            self._emit_event("on_error", self, error)
            if self.logger.entries:
                error.step_index = self.logger.entries[-1].step_index
            raise
        except BFQParseError as error:
            # A quine re-run may hand back a buffer with unmatched brackets.
            self._emit_event("on_error", self, error)
            raise
        except RecursionError:
            wrapped = RecursionLimitExceeded(
                "Python recursion limit reached before max_depth",
                location=self._current_location(),
                rewrite_rule="DEPTH",
            )
            self._emit_event("on_error", self, wrapped)
            wrapped.step_index = self.logger.next_state_index - 1
            raise wrapped
        except Exception as exc:
            self._emit_event("on_error", self, exc)
            # Convert unexpected Python-level exceptions so the CLI and REPL
            # can format them as BFQ tracebacks.
            wrapped = BFQRuntimeError(
                f"Internal interpreter error: {exc}",
                location=self._current_location(),
                rewrite_rule="internal",
            )
            wrapped.step_index = self.logger.next_state_index - 1
            raise wrapped
        else:
            self._emit_event("program_end", self, bytes(self.output))

    def _execute(self, code: List[str], pairs: PairingMap, *, name: str, filename: str) -> None:
        depth = len(self.call_stack)
        if depth >= self.max_depth:
            raise RecursionLimitExceeded(
                f"Nested invocation depth exceeded {self.max_depth}",
                location=self._current_location(),
                rewrite_rule="DEPTH",
            )
        frame = self._new_frame(name, code, pairs, filename, depth)
        self.call_stack.append(frame)
        self._emit_event("frame_enter", self, frame)
        try:
            self._run_frame(frame)
        except TerminateSignal:
            pass
        # Frames stay on the stack when an error escapes so tracebacks can show them.
        self._emit_event("frame_exit", self, frame)
        self.call_stack.pop()
        self.logger.forget_frame(frame.frame_id)

    def _run_frame(self, frame: Frame) -> None:
        code = frame.code
        n = len(code)
        functions = self.functions
        commands = self.commands
        log_step = self._log_step
        while frame.index < n:
            i = frame.index
            ch = code[i]
            if frame.mode is Mode.NICE:
                log_step(frame, "NICE")
                if ch == "9":
                    frame.mode = Mode.NORMAL
                else:
                    self._write(NICE_LINE)
                frame.index = i + 1
                continue
            if frame.mode is Mode.BASIC:
                if ch not in BASIC_ALLOWED:
                    frame.index = i + 1
                    continue
            elif ch not in RESERVED_CHARS:
                if i + 2 < n and code[i + 1] == "=":
                    log_step(frame, "COPY")
                    functions.copy_fn(code[i + 2], ch)
                    frame.index = i + 3
                    continue
            elif functions.any_creating():
                log_step(frame, "CAPTURE")
                functions.put(ch)
                frame.index = i + 1
                continue

            log_step(frame, ch)
            handler = commands.get(ch)
            if handler is not None:
                target = handler(frame)
            elif ch in RESERVED_CHARS:
                target = self._extension_command(frame, ch)
            else:
                target = self._function_event(frame, ch)
            frame.index = i + 1 if target is None else target

    # ---- commands ----

    def _delete_left(self, frame: Frame) -> None:
        self.tape.delete_left()

    def _delete_right(self, frame: Frame) -> None:
        self.tape.delete_right()

    def _divide(self, frame: Frame) -> None:
        divisor = self.tape.get_next()
        self.tape.set(255 if divisor == 0 else self.tape.get() // divisor)

    def _not(self, frame: Frame) -> None:
        value = self.tape.get()
        if value == 0:
            self.tape.set(1)
        elif value == 1:
            self.tape.set(0)

    def _read(self, frame: Frame) -> None:
        value = self.input_provider()
        self.tape.set(0 if value is None else value)

    def _loop_open(self, frame: Frame) -> Optional[int]:
        if self.tape.get() == 0:
            return self._pair(frame, frame.index, opener=True) + 1
        return None

    def _loop_close(self, frame: Frame) -> Optional[int]:
        if self.tape.get() != 0:
            return self._pair(frame, frame.index, opener=False) + 1
        return None

    def _break(self, frame: Frame) -> Optional[int]:
        code = frame.code
        for j in range(frame.index, len(code)):
            if code[j] == "]" and frame.pairs.get_by_right(j) is not None:
                return j + 1
        return None

    def _terminate(self, frame: Frame) -> None:
        raise TerminateSignal()

    def _string(self, frame: Frame) -> int:
        end = self._pair(frame, frame.index, opener=True)
        for ch in frame.code[frame.index + 1:end]:
            self.tape.next()
            self.tape.set(ord(ch))
        return end + 1

    def _comment(self, frame: Frame) -> int:
        return self._pair(frame, frame.index, opener=True) + 1

    def _quine(self, frame: Frame) -> None:
        try:
            text = bytes(self.output).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise BFQRuntimeError(
                f"Output is not valid UTF-8 and cannot be re-run: {exc}",
                location=self._location(frame, frame.index),
                rewrite_rule="QUINE",
            )
        code = list(text)
        self._execute(code, build_pairing_map(code, "<quine>"), name="<quine>", filename="<quine>")

    def _toggle_basic(self, frame: Frame) -> None:
        frame.mode = Mode.NORMAL if frame.mode is Mode.BASIC else Mode.BASIC

    def _conditional(self, frame: Frame) -> Optional[int]:
        target = frame.pairs.get_by_left(frame.index)
        if target is not None:
            return target + 1 if self.tape.get() == 0 else None
        target = frame.pairs.get_by_right(frame.index)
        if target is not None and self.tape.get() != 0:
            return target + 1
        return None

    def _zero(self, frame: Frame) -> Optional[int]:
        target = frame.pairs.get_by_left(frame.index)
        if target is None:
            target = frame.pairs.get_by_right(frame.index)
        return None if target is None else target + 1

    def _enter_nice(self, frame: Frame) -> None:
        frame.mode = Mode.NICE

    def _eights(self, frame: Frame) -> None:
        tape = self.tape
        tape.prev()
        tape.prev()
        tape.prev()
        for _ in range(7):
            tape.set(8)
            tape.next()

    def _stray_assignment(self, frame: Frame) -> None:
        raise BFQRuntimeError(
            "'=' must follow a function identifier and precede the function to copy",
            location=self._location(frame, frame.index),
            rewrite_rule="=",
        )

    def _extension_command(self, frame: Frame, ch: str) -> None:
        provided = self.services.commands.get(ch)
        if provided is None:
            raise BFQRuntimeError(
                f"Command '{ch}' is not yet implemented",
                location=self._location(frame, frame.index),
                rewrite_rule="UNIMPLEMENTED",
            )
        impl, _ext_name = provided
        impl(self, frame)
        return None

    def _function_event(self, frame: Frame, ch: str) -> None:
        functions = self.functions
        entry = functions.get(ch)
        if entry is not None:
            body, start = entry
            self._execute(list(body), frame.pairs.offset(start), name=f"<function '{ch}'>", filename=frame.filename)
        elif functions.is_creating(ch):
            functions.end(ch)
        else:
            functions.begin(ch, frame.index + 1)
        return None

    # ---- helpers ----

    def _write(self, data: bytes) -> None:
        self.output_sink(data)
        self.output.extend(data)

    def _pair(self, frame: Frame, position: int, *, opener: bool) -> int:
        pairs = frame.pairs
        target = pairs.get_by_left(position) if opener else pairs.get_by_right(position)
        if target is None:
            ch = frame.code[position]
            raise BFQRuntimeError(
                f"No paired position for '{ch}' at position {position}",
                location=self._location(frame, position),
                rewrite_rule=ch,
            )
        return target

    def _location(self, frame: Frame, position: int) -> SourceLocation:
        return locate(frame.code, position, frame.filename)

    def _current_location(self) -> Optional[SourceLocation]:
        if not self.call_stack:
            return None
        frame = self.call_stack[-1]
        return self._location(frame, frame.index)

    def _new_frame(self, name: str, code: List[str], pairs: PairingMap, filename: str, depth: int) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, frame_id=frame_id, code=code, pairs=pairs, filename=filename, depth=depth)

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except BFQError:
            raise
        except Exception as exc:
            raise BFQRuntimeError(
                f"Extension hook '{event}' failed: {exc}",
                location=self._current_location(),
                rewrite_rule="EXT",
            )

    def _log_step(self, frame: Frame, rule: str) -> None:
        position = frame.index
        entry = self.logger.record(
            frame=frame,
            position=position,
            statement=frame.code[position],
            rewrite_record={"rule": rule},
            tape_snapshot=self.tape.snapshot() if self.verbose else None,
        )
        if not self.hook_registry.has_step_rules():
            return
        # Run extension step rules (every N steps) after recording.
        try:
            self.hook_registry.after_step(
                self,
                StepContext(step_index=entry.step_index, rule=rule, frame_name=frame.name, position=position),
            )
        except BFQError:
            raise
        except Exception as exc:
            raise BFQRuntimeError(
                f"Extension step rule failed: {exc}",
                location=self._location(frame, position),
                rewrite_rule="EXT",
            )


def execute(code: str, **kwargs: Any) -> bytes:
    """Run ``code`` to completion and return everything it printed."""
    interpreter = Interpreter(source=code, **kwargs)
    interpreter.run()
    return bytes(interpreter.output)


@dataclass
class TracebackFrame:
    name: str
    location: Optional[SourceLocation]
    position: Optional[int]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for frame in self.interpreter.call_stack:
            entry = self.interpreter.logger.last_entry_for_frame(frame.frame_id)
            position = entry.position if entry and entry.position is not None else frame.index
            location = locate(frame.code, position, frame.filename) if position < len(frame.code) else None
            frames.append(
                TracebackFrame(
                    name=frame.name,
                    location=location,
                    position=position,
                    state_entry=entry,
                )
            )
        return frames

    def format_text(self, error: BFQRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            if frame.location:
                lines.append(
                    f"  File \"{frame.location.file}\", line {frame.location.line}, column {frame.location.column}, in {frame.name}"
                )
                lines.append(f"    {frame.location.statement!r} at position {frame.position}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            if frame.state_entry:
                lines.append(
                    f"    State log index: {frame.state_entry.step_index}  State id: {frame.state_entry.state_id}"
                )
                if verbose and frame.state_entry.tape_snapshot is not None:
                    lines.append(f"    Tape: {frame.state_entry.tape_snapshot}")
        if verbose:
            defined = self.interpreter.functions.snapshot()
            if defined:
                rendered = ", ".join(f"{k}={v!r}" for k, v in sorted(defined.items()))
                lines.append(f"Functions: {rendered}")
        rule = error.rewrite_rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: BFQRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name, "position": frame.position}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "column": frame.location.column,
                    "statement": frame.location.statement,
                }
            if frame.state_entry:
                entry["state_id"] = frame.state_entry.state_id
                entry["step_index"] = frame.state_entry.step_index
                if frame.state_entry.tape_snapshot is not None:
                    entry["tape_snapshot"] = frame.state_entry.tape_snapshot
                if frame.state_entry.rewrite_record is not None:
                    entry["rewrite_record"] = frame.state_entry.rewrite_record
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "rule": error.rewrite_rule,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)
