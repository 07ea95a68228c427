"""Pending tool approvals

A backend that asks permission before running a tool is suspended on a
future keyed by request id until the client answers, the wait times out, or
the turn goes away.
"""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ApprovalDecision:
    allow: bool
    updated_input: Optional[Dict[str, Any]] = None
    message: Optional[str] = None


@dataclass
class PendingApproval:
    request_id: str
    tool_name: str
    tool_input: Dict[str, Any]
    future: asyncio.Future


class ApprovalTable:
    """One-shot rendezvous between a suspended backend and the client"""

    def __init__(self, timeout_seconds: float = 300.0):
        self.timeout_seconds = timeout_seconds
        self._pending: Dict[str, PendingApproval] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._pending

    def create(self, tool_name: str, tool_input: Dict[str, Any]) -> str:
        """Register a pending request and return its id"""
        request_id = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        self._pending[request_id] = PendingApproval(
            request_id=request_id,
            tool_name=tool_name,
            tool_input=dict(tool_input or {}),
            future=loop.create_future(),
        )
        logger.info("Tool approval requested", request_id=request_id, tool_name=tool_name)
        return request_id

    async def wait(self, request_id: str, timeout: Optional[float] = None) -> ApprovalDecision:
        """Suspend until the request is resolved; a timeout denies it"""
        pending = self._pending.get(request_id)
        if pending is None:
            return ApprovalDecision(allow=False, message="Unknown approval request")

        timeout = self.timeout_seconds if timeout is None else timeout
        try:
            return await asyncio.wait_for(pending.future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Tool approval timed out",
                           request_id=request_id,
                           tool_name=pending.tool_name,
                           timeout=timeout)
            return ApprovalDecision(allow=False, message="Tool approval timed out")
        finally:
            self._pending.pop(request_id, None)

    def resolve(self, request_id: str, decision: ApprovalDecision) -> bool:
        """Deliver a decision; unknown or already-answered ids are ignored"""
        pending = self._pending.get(request_id)
        if pending is None or pending.future.done():
            logger.debug("Approval response for unknown request", request_id=request_id)
            return False

        pending.future.set_result(decision)
        logger.info("Tool approval resolved",
                    request_id=request_id,
                    tool_name=pending.tool_name,
                    allow=decision.allow)
        return True

    def cancel(self, request_id: str) -> bool:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.cancel()
        return True

