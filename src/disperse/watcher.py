"""Long-running balance watch.

The watcher only reports that funds arrived. Whether anything gets sent is
decided by the caller, one confirmed session at a time.
"""

import asyncio
import logging
from decimal import Decimal
from typing import AsyncIterator

from disperse.endpoints import RpcClient
from disperse.errors import DisperseError
from disperse.models import Asset
from disperse.payout import read_balance

log = logging.getLogger("disperse.watcher")


class BalanceWatcher:
    def __init__(
        self,
        transport: RpcClient,
        address: str,
        asset: Asset,
        *,
        poll_interval: float = 10.0,
        min_increase: Decimal = Decimal(1),
        stop: asyncio.Event | None = None,
    ) -> None:
        self.transport = transport
        self.address = address
        self.asset = asset
        self.poll_interval = poll_interval
        self.min_increase = min_increase
        self.stop = stop or asyncio.Event()
        self.last_seen: Decimal | None = None

    async def _wait(self) -> None:
        try:
            await asyncio.wait_for(self.stop.wait(), timeout=self.poll_interval)
        except TimeoutError:
            pass

    async def poll(self) -> Decimal | None:
        """Read the balance once. Returns it when it grew by ``min_increase`` or more."""
        try:
            balance = await read_balance(self.transport, self.address, self.asset)
        except DisperseError as e:
            log.warning("Balance poll failed for %s: %s", self.address, e)
            return None

        previous, self.last_seen = self.last_seen, balance
        if previous is None:
            log.info("Watching %s, starting balance %s", self.address, balance)
            return None
        if balance - previous >= self.min_increase:
            log.info("Balance of %s rose %s -> %s", self.address, previous, balance)
            return balance
        return None

    async def __aiter__(self) -> AsyncIterator[Decimal]:
        while not self.stop.is_set():
            balance = await self.poll()
            if balance is not None:
                yield balance
            await self._wait()
