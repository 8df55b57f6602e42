"""Canvas Runtime source package.

This package contains the agent simulation components:
- config: Configuration loading and management
- world: Ledger, transaction state machine, sandbox executor, job queue, event log
- simulation: Tick execution, scheduler, replay, undo history, session facade
"""

from __future__ import annotations

__all__: list[str] = []
