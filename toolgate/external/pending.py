"""In-flight operations awaiting a correlated reply."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from toolgate.errors import GatewayError, ProtocolError, RequestTimeoutError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PendingOperation:
    op_id: str
    method: str
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None
    created_at: float = field(default_factory=time.monotonic)

    def settle(self, value: Any = None, error: Optional[BaseException] = None) -> bool:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        if self.future.done():
            return False
        if error is not None:
            self.future.set_exception(error)
        else:
            self.future.set_result(value)
        return True


class PendingOperations:
    """
    Table of operations for one server, keyed by operation id.

    An entry leaves the table the moment it is settled, so every operation
    completes exactly once: by a reply, by its timer, or by a bulk failure.
    """

    def __init__(self, server_id: str):
        self.server_id = server_id
        self._ops: Dict[str, PendingOperation] = {}

    def __len__(self) -> int:
        return len(self._ops)

    def __contains__(self, op_id: object) -> bool:
        return op_id in self._ops

    def register(self, op_id: str, method: str, timeout_ms: int) -> PendingOperation:
        if op_id in self._ops:
            raise ProtocolError(f"Duplicate operation id: {op_id}", {"server_id": self.server_id})

        loop = asyncio.get_running_loop()
        op = PendingOperation(op_id=op_id, method=method, future=loop.create_future())
        op.timer = loop.call_later(timeout_ms / 1000, self._expire, op_id, timeout_ms)
        self._ops[op_id] = op
        return op

    def resolve(self, op_id: str, value: Any) -> bool:
        op = self._ops.pop(op_id, None)
        return op.settle(value=value) if op else False

    def reject(self, op_id: str, error: BaseException) -> bool:
        op = self._ops.pop(op_id, None)
        return op.settle(error=error) if op else False

    def discard(self, op_id: str) -> None:
        op = self._ops.pop(op_id, None)
        if op is not None and op.timer is not None:
            op.timer.cancel()
            op.timer = None

    def fail_all(self, make_error: Callable[[], GatewayError]) -> int:
        ops, self._ops = self._ops, {}
        failed = 0
        for op in ops.values():
            if op.settle(error=make_error()):
                failed += 1
        return failed

    def _expire(self, op_id: str, timeout_ms: int) -> None:
        op = self._ops.pop(op_id, None)
        if op is None:
            return
        op.timer = None
        logger.warning(f"Operation {op.method} ({op_id}) on {self.server_id} timed out after {timeout_ms}ms")
        op.settle(error=RequestTimeoutError(self.server_id, op_id, timeout_ms))


async def wait_for_reply(table: PendingOperations, op: PendingOperation) -> Any:
    """Await ``op``; a cancelled caller removes its own entry."""
    try:
        return await op.future
    finally:
        table.discard(op.op_id)
