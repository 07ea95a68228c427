"""Session Models

In-memory session bookkeeping: the cancellation token a turn owns and the
handle stored in an adapter's session registry.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


class CancellationToken:
    """Cooperative cancellation signal owned by one turn

    The dispatcher creates the token, binds it to the task driving the turn
    and hands it to the adapter. ``cancel`` cancels the bound task so the
    adapter is interrupted at whatever stream read it is suspended on.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def bind(self, task: asyncio.Task) -> None:
        """Attach the task that drives the turn"""
        self._task = task
        if self._cancelled:
            task.cancel()

    def cancel(self) -> bool:
        """Signal cancellation; returns False if it was already signaled"""
        if self._cancelled:
            return False
        self._cancelled = True

        task = self._task
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if task is not current:
                task.cancel()
        return True


@dataclass
class SessionHandle:
    """Registry entry for one live session"""
    session_id: str
    provider_id: str
    token: CancellationToken
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_active_at: datetime = field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def touch(self) -> None:
        self.last_active_at = datetime.utcnow()
