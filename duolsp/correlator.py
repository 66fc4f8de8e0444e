"""请求关联器

为每个发出的请求分配 id，保存对应的 Future，收到响应、取消或超时时恰好移除一次。
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Generator, List, Optional

from .jsonrpc import JSONRPCError, JSONRPCResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingRequest:
    """进行中的请求

    可以直接 await，得到 JSONRPCResponse。被取消时 await 抛出 CancelledError。
    """

    id: int
    method: str
    future: asyncio.Future = field(compare=False, repr=False)
    registered_at: float = field(default_factory=time.monotonic, compare=False)

    def __await__(self) -> Generator[Any, None, JSONRPCResponse]:
        return self.future.__await__()

    @property
    def done(self) -> bool:
        return self.future.done()

    @property
    def cancelled(self) -> bool:
        return self.future.cancelled()

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.monotonic()) - self.registered_at


class RequestCorrelator:
    """请求关联器

    register 在调用方执行，resolve 在读取循环中执行，表由一把锁保护。
    """

    def __init__(self) -> None:
        self._next_id = 1
        self._pending: Dict[int, PendingRequest] = {}
        self._lock = threading.Lock()

    def register(self, method: str = "") -> PendingRequest:
        """登记一个请求，返回带新 id 的 PendingRequest（需在事件循环中调用）"""
        future = asyncio.get_running_loop().create_future()
        with self._lock:
            request_id = self._next_id
            self._next_id += 1
            pending = PendingRequest(id=request_id, method=method, future=future)
            self._pending[request_id] = pending
        return pending

    def resolve(
        self,
        request_id: Any,
        result: Any = None,
        error: Optional[JSONRPCError] = None,
    ) -> bool:
        """完成请求

        Returns:
            是否找到该请求；未知 id（例如已取消）直接丢弃
        """
        with self._lock:
            pending = self._pending.pop(request_id, None)
        if pending is None:
            logger.debug(f"丢弃未知 id 的响应: {request_id}")
            return False

        if error is not None:
            response = JSONRPCResponse(id=request_id, error=error)
        else:
            response = JSONRPCResponse(id=request_id, result=result)

        if not pending.future.done():
            pending.future.set_result(response)
        return True

    def resolve_response(self, response: JSONRPCResponse) -> bool:
        """用完整的响应对象完成请求"""
        return self.resolve(response.id, result=response.result, error=response.error)

    def cancel(self, request_id: int) -> bool:
        """取消单个请求，不投递任何结果"""
        with self._lock:
            pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        pending.future.cancel()
        return True

    def cancel_all(self) -> int:
        """取消全部请求，返回取消的数量"""
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for request in pending:
            request.future.cancel()
        return len(pending)

    def sweep_stale(self, timeout: float) -> List[int]:
        """清理超过 timeout 秒未响应的请求，以超时错误完成它们"""
        now = time.monotonic()
        with self._lock:
            stale = [p for p in self._pending.values() if p.age(now) > timeout]
            for request in stale:
                del self._pending[request.id]

        for request in stale:
            logger.warning(f"LSP 请求超时: {request.method or '?'} (id={request.id})")
            if not request.future.done():
                request.future.set_result(JSONRPCResponse.timed_out(request.id))
        return [request.id for request in stale]

    def is_pending(self, request_id: int) -> bool:
        with self._lock:
            return request_id in self._pending

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def pending_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._pending)
