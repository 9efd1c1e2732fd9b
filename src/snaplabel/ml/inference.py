"""Session worker.

Architecture:
    SessionController (async) -> InferenceWorker -> ThreadPoolExecutor(1) -> copy / decode / ONNX inference

Every blocking stage of a request runs on the same single thread, so the
loaded model is never entered from two threads at once.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferenceWorker:
    """Runs blocking pipeline stages on one dedicated thread."""

    def __init__(self) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="snaplabel-worker",
        )

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous function to the worker thread and await it."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    def shutdown(self) -> None:
        """Shut down the worker thread."""
        self._executor.shutdown(wait=True)
        logger.debug("Session worker stopped")
