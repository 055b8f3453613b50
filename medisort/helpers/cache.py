import asyncio
from collections import OrderedDict
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from functools import wraps

from aiojobs import Scheduler


@asynccontextmanager
async def get_scheduler() -> AsyncGenerator[Scheduler]:
    """
    Get the scheduler for async background tasks, like reconciling fetches after a write.

    Scheduler should be used for each request to avoid conflicts. It is closed automatically, waiting 15 secs for tasks to finish.
    """
    async with Scheduler(
        close_timeout=15,  # Reconciling fetches are bounded by the backend timeout
    ) as scheduler:
        yield scheduler


def lru_acache(maxsize: int = 128):
    """
    Caches an async function's result, per event loop and arguments.

    Concurrent first calls share the same pending task, so the function runs once. A failed call is not cached. If the maxsize is reached, the least recently used result is removed.
    """

    def decorator(func):
        tasks: OrderedDict[tuple, asyncio.Task] = OrderedDict()

        @wraps(func)
        async def wrapper(*args, **kwargs):
            # Objects like sessions and pools are bound to the loop that created them
            key = (
                id(asyncio.get_running_loop()),
                args,
                frozenset(kwargs.items()),
            )

            task = tasks.get(key)
            if task:
                tasks.move_to_end(key)
            else:
                task = asyncio.ensure_future(func(*args, **kwargs))
                tasks[key] = task
                if len(tasks) > maxsize:
                    tasks.popitem(last=False)

            try:
                return await asyncio.shield(task)
            except Exception:
                if tasks.get(key) is task:
                    del tasks[key]
                raise

        return wrapper

    return decorator
