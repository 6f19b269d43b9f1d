# backend/intelligence/write_queue.py
import asyncio
import logging
from collections.abc import Callable, Awaitable
from typing import Any

logger = logging.getLogger(__name__)

_queue: asyncio.Queue | None = None
_worker_task: asyncio.Task | None = None
_worker_loop: asyncio.AbstractEventLoop | None = None


async def enqueue_write(operation: Callable[[], Awaitable[Any]]) -> Any:
    """Submit a write operation and await its result.

    LanceDB tables tolerate one writer at a time, so every mutation in the
    pipeline (chunk rows, vectors, message annotations, run status) is funnelled
    through a single worker task.
    """
    await start_write_worker()
    future = asyncio.get_running_loop().create_future()
    await _queue.put((operation, future))
    return await future


async def _worker():
    """Single worker that processes writes sequentially."""
    while True:
        operation, future = await _queue.get()
        try:
            result = await operation()
            if not future.cancelled():
                future.set_result(result)
        except Exception as e:
            if not future.cancelled():
                future.set_exception(e)
        finally:
            _queue.task_done()


async def start_write_worker():
    global _queue, _worker_task, _worker_loop
    loop = asyncio.get_running_loop()
    if _worker_task is not None and not _worker_task.done() and _worker_loop is loop:
        return
    # A fresh event loop (new asyncio.run, app restart) needs its own queue.
    _queue = asyncio.Queue(maxsize=500)
    _worker_loop = loop
    _worker_task = asyncio.create_task(_worker())
    logger.debug("Write queue worker started")


async def stop_write_worker():
    global _worker_task
    if _worker_task is None:
        return
    _worker_task.cancel()
    try:
        await _worker_task
    except asyncio.CancelledError:
        pass
    _worker_task = None
