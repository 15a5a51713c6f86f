import asyncio
import logging

from xrpl.models.requests import AccountInfo

from disperse.endpoints import RpcClient
from disperse.errors import AccountNotFound, RpcError

log = logging.getLogger("disperse.sequencer")


class SequenceAllocator:
    """Hands out account Sequence numbers in contiguous, never reused blocks.

    The on-ledger Sequence is read once, lazily, on the first ``allocate``;
    after that allocation is local arithmetic under one lock. Sequences handed
    to transactions that later fail stay consumed.
    """

    def __init__(self, transport: RpcClient, address: str) -> None:
        self.transport = transport
        self.address = address
        self.baseline: int | None = None
        self._next: int | None = None
        self._lock = asyncio.Lock()

    async def _read_baseline(self) -> int:
        resp = await self.transport.request(AccountInfo(account=self.address, ledger_index="current", strict=True))
        if not resp.is_successful():
            if resp.result.get("error") == "actNotFound":
                raise AccountNotFound(self.address)
            raise RpcError("account_info", str(resp.result.get("error")))
        return int(resp.result["account_data"]["Sequence"])

    async def allocate(self, count: int) -> range:
        if count < 1:
            raise ValueError(f"count must be positive, got {count}")
        async with self._lock:
            if self._next is None:
                self.baseline = self._next = await self._read_baseline()
                log.debug("Sequence baseline for %s is %d", self.address, self.baseline)
            block = range(self._next, self._next + count)
            self._next += count
        log.debug("Allocated sequences %d..%d for %s", block.start, block.stop - 1, self.address)
        return block

    @property
    def next_unused(self) -> int | None:
        return self._next
