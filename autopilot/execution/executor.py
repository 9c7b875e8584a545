"""autopilot.execution.executor

Executor boundary.

The engine never trades. It hands a ``RebalanceInstruction`` to whatever sits
behind this protocol and applies the ``RebalanceResult`` it gets back.

Executors signal failure either with ``success=False`` in the result or by
raising an ``ExecutionError``; both leave the position's allocation untouched.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from autopilot.core.types import RebalanceInstruction, RebalanceResult


@runtime_checkable
class RebalanceExecutor(Protocol):
    def execute(self, instruction: RebalanceInstruction) -> RebalanceResult: ...
