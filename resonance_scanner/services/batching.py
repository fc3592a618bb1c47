"""
分批并发与节流

批内并发、批间固定间隔；单个任务失败被收集为结果，不会中断整批。
iter_batches 是异步生成器：调用方停止迭代即不再发出后续批次。
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")


@dataclass
class ItemOutcome(Generic[K, V]):
    """单个任务的结果：value 与 error 二选一"""
    key: K
    value: Optional[V] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Throttle:
    """固定间隔节流器：第一次 wait 立即返回，之后每次等待 delay 秒"""

    def __init__(self, delay: float, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        if delay < 0:
            raise ValueError("delay must be >= 0")
        self.delay = delay
        self._sleep = sleep
        self._primed = False
        self.waits = 0

    async def wait(self) -> None:
        if self._primed and self.delay > 0:
            self.waits += 1
            await self._sleep(self.delay)
        self._primed = True


def chunked(items: Sequence[K], size: int) -> List[List[K]]:
    if size <= 0:
        raise ValueError("batch size must be > 0")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


async def iter_batches(
    items: Sequence[K],
    worker: Callable[[K], Awaitable[V]],
    batch_size: int,
    throttle: Optional[Throttle] = None,
) -> AsyncIterator[List[ItemOutcome[K, V]]]:
    """逐批执行 worker，每批产出一组 ItemOutcome（批内顺序不保证与提交顺序一致）"""
    batches = chunked(items, batch_size)
    for n, batch in enumerate(batches, start=1):
        if throttle is not None:
            await throttle.wait()
        results = await asyncio.gather(*(worker(k) for k in batch), return_exceptions=True)
        outcomes = []
        for key, result in zip(batch, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                outcomes.append(ItemOutcome(key=key, error=result))
            else:
                outcomes.append(ItemOutcome(key=key, value=result))
        failed = sum(1 for o in outcomes if not o.ok)
        logger.debug(f"批次 {n}/{len(batches)} 完成: {len(batch) - failed} 成功, {failed} 失败")
        yield outcomes


async def run_batched(
    items: Sequence[K],
    worker: Callable[[K], Awaitable[V]],
    batch_size: int,
    throttle: Optional[Throttle] = None,
) -> List[ItemOutcome[K, V]]:
    """执行全部批次并汇总结果"""
    outcomes: List[ItemOutcome[K, V]] = []
    async for batch in iter_batches(items, worker, batch_size, throttle):
        outcomes.extend(batch)
    return outcomes
