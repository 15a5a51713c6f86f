"""One end-to-end dispersal run.

``DispersalSession`` ties the pieces together in order: validate endpoints into
a fallback transport, compute the payout against one balance read, then hand
the fixed amount to the dispatcher and fold its outcomes into a summary.
Nothing is persisted; the session lives as long as the run.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Sequence

from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.wallet import Wallet

from disperse import constants as C
from disperse.aggregator import ResultAggregator
from disperse.dispatcher import BatchDispatcher, RetryPolicy
from disperse.endpoints import FallbackTransport, RpcClient, build_transport
from disperse.errors import DisperseError
from disperse.models import Asset, ChainDescriptor, FeeParams, Outcome, Payout, SessionSummary, ValidationEvent
from disperse.payout import PayoutCalculator
from disperse.sequencer import SequenceAllocator

log = logging.getLogger("disperse.session")


@dataclass(frozen=True, slots=True)
class SessionSettings:
    batch_size: int = C.DEFAULT_BATCH_SIZE
    max_attempts: int = C.DEFAULT_MAX_ATTEMPTS
    base_delay: float = C.DEFAULT_BASE_DELAY
    submit_timeout: float = C.SUBMIT_TIMEOUT
    rpc_timeout: float = C.RPC_TIMEOUT
    strict_identity: bool = False
    native_fee_drops: int = C.DEFAULT_FEE_DROPS[C.TransferKind.NATIVE]
    token_fee_drops: int = C.DEFAULT_FEE_DROPS[C.TransferKind.TOKEN]
    ledger_horizon: int = C.HORIZON
    account_reserve_drops: int = C.ACCOUNT_RESERVE_DROPS
    token_quantum: Decimal = C.XRP_QUANTUM

    @classmethod
    def from_config(cls, cfg: dict, **overrides) -> "SessionSettings":
        d, rpc, fees, payout = cfg["dispatch"], cfg["rpc"], cfg["fees"], cfg["payout"]
        values = dict(
            batch_size=int(d.get("batch_size", C.DEFAULT_BATCH_SIZE)),
            max_attempts=int(d.get("max_attempts", C.DEFAULT_MAX_ATTEMPTS)),
            base_delay=float(d.get("base_delay", C.DEFAULT_BASE_DELAY)),
            submit_timeout=float(d.get("submit_timeout", C.SUBMIT_TIMEOUT)),
            rpc_timeout=float(rpc.get("timeout", C.RPC_TIMEOUT)),
            strict_identity=bool(rpc.get("strict_identity", False)),
            native_fee_drops=int(fees.get("native_drops", C.DEFAULT_FEE_DROPS[C.TransferKind.NATIVE])),
            token_fee_drops=int(fees.get("token_drops", C.DEFAULT_FEE_DROPS[C.TransferKind.TOKEN])),
            ledger_horizon=int(fees.get("ledger_horizon", C.HORIZON)),
            account_reserve_drops=int(payout.get("account_reserve_drops", C.ACCOUNT_RESERVE_DROPS)),
            token_quantum=Decimal(str(payout.get("token_quantum", C.XRP_QUANTUM))),
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def fee_for(self, asset: Asset) -> FeeParams:
        drops = self.native_fee_drops if asset.is_native else self.token_fee_drops
        return FeeParams(fee_drops=drops, ledger_horizon=self.ledger_horizon)

    @property
    def retry(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.max_attempts, base_delay=self.base_delay)


class DispersalSession:
    def __init__(
        self,
        chain: ChainDescriptor,
        wallet: Wallet,
        recipients: Sequence[str],
        asset: Asset | None = None,
        *,
        settings: SessionSettings | None = None,
        fee: FeeParams | None = None,
        client_factory: Callable[[str], RpcClient] = AsyncJsonRpcClient,
        on_event: Callable[[ValidationEvent], None] | None = None,
        transport: FallbackTransport | None = None,
    ) -> None:
        if not recipients:
            raise DisperseError("No valid recipients")
        self.chain = chain
        self.wallet = wallet
        self.recipients = list(recipients)
        self.settings = settings or SessionSettings()
        self.asset = asset or Asset.native()
        self.fee = fee or self.settings.fee_for(self.asset)
        self.client_factory = client_factory
        self.on_event = on_event
        self.transport = transport
        self.sequencer: SequenceAllocator | None = None

    @property
    def symbol(self) -> str:
        return self.asset.symbol(self.chain)

    async def connect(self) -> FallbackTransport:
        if self.transport is None:
            self.transport = await build_transport(
                self.chain,
                timeout=self.settings.rpc_timeout,
                strict_identity=self.settings.strict_identity,
                client_factory=self.client_factory,
                on_event=self.on_event,
            )
        if self.sequencer is None:
            self.sequencer = SequenceAllocator(self.transport, self.wallet.address)
        return self.transport

    async def prepare(self, amount: Decimal | None) -> Payout:
        """Compute the payout: ``amount`` each, or an equal split when None."""
        transport = await self.connect()
        calc = PayoutCalculator(
            transport,
            self.wallet.address,
            self.asset,
            fee=self.fee,
            account_reserve_drops=self.settings.account_reserve_drops,
            symbol=self.symbol,
        )
        if amount is None:
            return await calc.split(len(self.recipients))
        return await calc.fixed(amount, len(self.recipients))

    async def execute(
        self,
        payout: Payout,
        *,
        stop: asyncio.Event | None = None,
        on_outcome: Callable[[Outcome], None] | None = None,
    ) -> SessionSummary:
        transport = await self.connect()
        dispatcher = BatchDispatcher(
            transport,
            self.wallet,
            self.sequencer,
            self.asset,
            self.fee,
            batch_size=self.settings.batch_size,
            retry=self.settings.retry,
            submit_timeout=self.settings.submit_timeout,
        )
        agg = ResultAggregator(self.chain, self.wallet.address, self.symbol, payout.amount, len(self.recipients))

        log.info("Sending %s %s to %d recipients from %s", payout.amount, self.symbol, len(self.recipients), self.wallet.address)
        async for outcome in dispatcher.dispatch(self.recipients, payout.amount, stop=stop):
            agg.add(outcome)
            if on_outcome:
                on_outcome(outcome)

        return agg.summary(aborted=len(agg.outcomes) < len(self.recipients))

    async def run(
        self,
        amount: Decimal | None = None,
        *,
        stop: asyncio.Event | None = None,
        on_outcome: Callable[[Outcome], None] | None = None,
    ) -> SessionSummary:
        payout = await self.prepare(amount)
        return await self.execute(payout, stop=stop, on_outcome=on_outcome)
