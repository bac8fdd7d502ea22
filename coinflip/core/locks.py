"""
Per-player creation lock.

Serializes round creation for one player inside this process so two quick
requests cannot both pass the "no active round" check. Exclusivity across
processes comes from the store's uniqueness constraint, not from here.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, TypeVar

from coinflip.core.models import player_key

T = TypeVar("T")


class PlayerLockRegistry:
    """Keyed FIFO critical sections. Not reentrant."""

    def __init__(self):
        self._tails: Dict[str, asyncio.Future] = {}

    def __len__(self):
        return len(self._tails)

    @asynccontextmanager
    async def hold(self, player: str):
        key = player_key(player)
        previous = self._tails.get(key)
        gate = asyncio.get_running_loop().create_future()
        self._tails[key] = gate

        try:
            if previous is not None:
                # shield: a cancelled waiter must not cancel its predecessor's gate
                await asyncio.shield(previous)
            yield
        finally:
            if previous is not None and not previous.done():
                # Cancelled while waiting; hand our place in line back to the predecessor
                previous.add_done_callback(lambda _: gate.done() or gate.set_result(None))
                if self._tails.get(key) is gate:
                    self._tails[key] = previous
            else:
                if not gate.done():
                    gate.set_result(None)
                if self._tails.get(key) is gate:
                    del self._tails[key]

    async def with_lock(self, player: str, task: Callable[[], Awaitable[T]]) -> T:
        """Run `task` once every earlier task for `player` has finished, whatever its outcome."""
        async with self.hold(player):
            return await task()
