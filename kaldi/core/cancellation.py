"""Cooperative cancellation signal passed through every long-running call."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from kaldi.core.errors import TurnCancelled

T = TypeVar("T")


class CancelToken:
    """One-shot cancellation flag with parent -> child propagation.

    A child token fires when its parent fires, never the other way round,
    so cancelling a sub-agent does not cancel its parent conversation.
    """

    def __init__(self, parent: CancelToken | None = None) -> None:
        self._event = asyncio.Event()
        self._children: list[CancelToken] = []
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        for child in self._children:
            child.cancel()

    def child(self) -> CancelToken:
        return CancelToken(parent=self)

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, aw: Awaitable[T], timeout: float | None = None) -> T:
        """Await `aw` unless the token fires or `timeout` expires first.

        Raises TurnCancelled when the token fires and TimeoutError on
        timeout. The losing awaitable is cancelled, so subprocess and I/O
        work behind it is torn down by its own cleanup handlers. A token
        that has already fired never starts the work, and a cancel that
        lands together with the result still wins.
        """
        if self.cancelled:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise TurnCancelled("cancelled")

        work = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise

        if work in done and not self.cancelled:
            waiter.cancel()
            return work.result()

        work.cancel()
        waiter.cancel()
        try:
            await work
        except (asyncio.CancelledError, Exception):
            pass
        if self.cancelled:
            raise TurnCancelled("cancelled")
        raise TimeoutError(f"timed out after {timeout}s")
