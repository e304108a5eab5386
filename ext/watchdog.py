"""BFQ Extension: step watchdog.

Behavior:
- Aborts a run once it has executed more than BFQ_MAX_STEPS steps
  (default 1000000). The count restarts at every program_start, so each REPL
  entry gets a fresh budget.
- Checks the budget every WATCHDOG_INTERVAL steps rather than on every step.
"""

from __future__ import annotations

import os

from extensions import ExtensionAPI, StepContext


BFQ_EXTENSION_NAME = "watchdog"
BFQ_EXTENSION_API_VERSION = 1

DEFAULT_MAX_STEPS = 1_000_000
WATCHDOG_INTERVAL = 64


def _max_steps() -> int:
    raw = os.environ.get("BFQ_MAX_STEPS", "")
    try:
        value = int(raw)
    except ValueError:
        return DEFAULT_MAX_STEPS
    return value if value > 0 else DEFAULT_MAX_STEPS


class _Budget:
    __slots__ = ("limit", "first_step")

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.first_step = 0


def bfq_register(ext: ExtensionAPI) -> None:
    ext.metadata(name=BFQ_EXTENSION_NAME, version="1.0.0")
    budget = _Budget(_max_steps())

    @ext.on_event("program_start")
    def _reset(interpreter) -> None:
        budget.first_step = interpreter.logger.next_state_index

    @ext.every_n_steps(WATCHDOG_INTERVAL, name="watchdog")
    def _check(interpreter, ctx: StepContext) -> None:
        from interpreter import BFQRuntimeError
        from lexer import locate

        used = ctx.step_index - budget.first_step
        if used > budget.limit:
            frame = interpreter.call_stack[-1]
            raise BFQRuntimeError(
                f"Step budget of {budget.limit} exhausted in {ctx.frame_name}",
                location=locate(frame.code, ctx.position, frame.filename),
                rewrite_rule="WATCHDOG",
            )
