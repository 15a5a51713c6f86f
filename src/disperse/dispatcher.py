"""Batched, retried submission of payments.

Recipients are cut into batches of at most ``batch_size``. Batches run one
after another; inside a batch every payment is signed up front with its own
pre-allocated Sequence and the submissions fan out concurrently, joined before
the next batch starts. Each submission gets ``RetryPolicy.max_attempts`` tries
of the *same* signed blob, so a retry can never become a second transaction.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncIterator, Callable, Sequence

from xrpl import XRPLException
from xrpl.core.addresscodec import is_valid_xaddress, xaddress_to_classic_address
from xrpl.core.binarycodec import encode, encode_for_signing
from xrpl.core.keypairs import sign
from xrpl.models.requests import LedgerCurrent, SubmitOnly
from xrpl.models.transactions import Payment
from xrpl.wallet import Wallet

from disperse.constants import (
    ACCEPTED_RESULTS,
    ALREADY_APPLIED,
    DEFAULT_BASE_DELAY,
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_ATTEMPTS,
    NETWORK_ID_FIELD_THRESHOLD,
    SUBMIT_TIMEOUT,
)
from disperse.endpoints import TRANSPORT_EXCEPTIONS, FallbackTransport
from disperse.errors import AllEndpointsFailed, RpcError
from disperse.models import Asset, Failure, FeeParams, Outcome, Success, TransactionIntent
from disperse.sequencer import SequenceAllocator

log = logging.getLogger("disperse.dispatcher")


def linear_backoff(base_delay: float, attempt: int) -> float:
    return base_delay * attempt


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    backoff: Callable[[float, int], float] = linear_backoff

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed ``attempt`` (1-based)."""
        return self.backoff(self.base_delay, attempt)


def batched(items: Sequence[str], size: int) -> list[list[tuple[int, str]]]:
    """Split ``items`` into ordered batches of ``(position, item)``, positions 1-based."""
    if size < 1:
        raise ValueError("batch size must be at least 1")
    numbered = list(enumerate(items, start=1))
    return [numbered[i:i + size] for i in range(0, len(numbered), size)]


def _sha512half(b: bytes) -> bytes:
    return hashlib.sha512(b).digest()[:32]


def _txid_from_signed_blob_hex(signed_blob_hex: str) -> str:
    # XRPL txid = SHA512Half(0x54584E00 || signed_bytes)
    return _sha512half(bytes.fromhex("54584E00") + bytes.fromhex(signed_blob_hex)).hex().upper()


def sign_transaction(txn: Payment, wallet: Wallet) -> tuple[str, str]:
    """Sign ``txn`` offline. Returns ``(signed_blob_hex, tx_hash)``."""
    tx = txn.to_xrpl()
    if tx.get("Flags") == 0:
        del tx["Flags"]
    tx["SigningPubKey"] = wallet.public_key
    tx["TxnSignature"] = sign(bytes.fromhex(encode_for_signing(tx)), wallet.private_key)
    signed_blob_hex = encode(tx)
    return signed_blob_hex, _txid_from_signed_blob_hex(signed_blob_hex)


class BatchDispatcher:
    def __init__(
        self,
        transport: FallbackTransport,
        wallet: Wallet,
        sequencer: SequenceAllocator,
        asset: Asset,
        fee: FeeParams,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        retry: RetryPolicy | None = None,
        submit_timeout: float = SUBMIT_TIMEOUT,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch size must be at least 1")
        self.transport = transport
        self.wallet = wallet
        self.sequencer = sequencer
        self.asset = asset
        self.fee = fee
        self.batch_size = batch_size
        self.retry = retry or RetryPolicy()
        self.submit_timeout = submit_timeout

    async def _last_ledger_sequence(self) -> int:
        resp = await self.transport.request(LedgerCurrent())
        if not resp.is_successful():
            raise RpcError("ledger_current", str(resp.result.get("error")))
        return int(resp.result["ledger_current_index"]) + self.fee.ledger_horizon

    def _payment(self, recipient: str, amount: Decimal, sequence: int, last_ledger: int) -> Payment:
        network_id = self.transport.network_id
        return Payment(
            account=self.wallet.address,
            destination=recipient,
            amount=self.asset.to_amount(amount),
            sequence=sequence,
            fee=str(self.fee.fee_drops),
            last_ledger_sequence=last_ledger,
            network_id=network_id if network_id > NETWORK_ID_FIELD_THRESHOLD else None,
        )

    def check_payment(self, recipient: str, amount: Decimal) -> str | None:
        """Why a payment to ``recipient`` cannot be built, or None when it can.

        Runs before any Sequence is allocated. A number taken by a payment that
        never reaches the ledger would leave every later one at terPRE_SEQ.
        """
        destination = xaddress_to_classic_address(recipient)[0] if is_valid_xaddress(recipient) else recipient
        if destination == self.wallet.address:
            return "recipient is the sending account"
        try:
            encode(self._payment(recipient, amount, sequence=0, last_ledger=0).to_xrpl())
        except (XRPLException, ValueError) as e:
            return str(e)
        return None

    def build_intent(self, position: int, recipient: str, amount: Decimal, sequence: int, last_ledger: int) -> TransactionIntent:
        payment = self._payment(recipient, amount, sequence, last_ledger)
        blob, tx_hash = sign_transaction(payment, self.wallet)
        return TransactionIntent(
            position=position,
            recipient=recipient,
            payment=payment,
            sequence=sequence,
            fee=self.fee,
            signed_blob=blob,
            tx_hash=tx_hash,
        )

    async def submit(self, intent: TransactionIntent) -> Outcome:
        reason, code = "not attempted", None
        for attempt in range(1, self.retry.max_attempts + 1):
            try:
                resp = await asyncio.wait_for(
                    self.transport.request(SubmitOnly(tx_blob=intent.signed_blob)),
                    timeout=self.submit_timeout,
                )
                res = resp.result
                er = res.get("engine_result")
                if resp.is_successful() and isinstance(er, str) and er.startswith(ACCEPTED_RESULTS):
                    tx_hash = res.get("tx_json", {}).get("hash") or intent.tx_hash
                    log.debug("Submitted seq=%d to %s: %s %s", intent.sequence, intent.recipient, er, tx_hash)
                    return Success(
                        position=intent.position,
                        recipient=intent.recipient,
                        sequence=intent.sequence,
                        tx_hash=tx_hash,
                        attempts=attempt,
                        engine_result=er,
                    )
                if attempt > 1 and er == ALREADY_APPLIED:
                    # An earlier attempt landed but its acknowledgment was lost.
                    log.info("seq=%d to %s already applied as %s", intent.sequence, intent.recipient, intent.tx_hash)
                    return Success(
                        position=intent.position,
                        recipient=intent.recipient,
                        sequence=intent.sequence,
                        tx_hash=intent.tx_hash,
                        attempts=attempt,
                        engine_result=er,
                    )
                code = er or res.get("error")
                reason = res.get("engine_result_message") or res.get("error_message") or str(code)
            except TimeoutError:
                reason, code = f"no acknowledgment within {self.submit_timeout}s", "timeout"
            except AllEndpointsFailed as e:
                reason, code = str(e), "transport"
            except TRANSPORT_EXCEPTIONS as e:
                reason, code = str(e), e.__class__.__name__
            except Exception as e:
                log.exception("Submit of seq=%d to %s failed unexpectedly", intent.sequence, intent.recipient)
                return Failure(
                    position=intent.position,
                    recipient=intent.recipient,
                    sequence=intent.sequence,
                    reason=f"{e.__class__.__name__}: {e}",
                    code="error",
                    attempts=attempt,
                )

            log.warning("Attempt %d/%d seq=%d to %s failed: %s (%s)",
                        attempt, self.retry.max_attempts, intent.sequence, intent.recipient, reason, code)
            if attempt < self.retry.max_attempts:
                await asyncio.sleep(self.retry.delay(attempt))

        return Failure(
            position=intent.position,
            recipient=intent.recipient,
            sequence=intent.sequence,
            reason=reason,
            code=code,
            attempts=self.retry.max_attempts,
        )

    async def run_batch(self, batch: list[tuple[int, str]], amount: Decimal) -> list[Outcome]:
        slots: dict[int, Outcome | TransactionIntent] = {}
        ready: list[tuple[int, str]] = []
        for pos, recipient in batch:
            problem = self.check_payment(recipient, amount)
            if problem is None:
                ready.append((pos, recipient))
            else:
                log.error("Skipping payment to %s: %s", recipient, problem)
                slots[pos] = Failure(position=pos, recipient=recipient, sequence=None, reason=problem, code="invalid", attempts=0)

        if ready:
            try:
                last_ledger = await self._last_ledger_sequence()
            except (AllEndpointsFailed, RpcError) as e:
                # Nothing allocated yet, so no sequence is burnt for this batch.
                log.error("Could not read current ledger, failing batch of %d: %s", len(ready), e)
                for pos, r in ready:
                    slots[pos] = Failure(position=pos, recipient=r, sequence=None, reason=str(e), code="transport", attempts=0)
                ready = []

        if ready:
            sequences = await self.sequencer.allocate(len(ready))
            for (pos, recipient), seq in zip(ready, sequences):
                try:
                    slots[pos] = self.build_intent(pos, recipient, amount, seq, last_ledger)
                except (XRPLException, ValueError) as e:
                    log.error("Could not sign payment to %s: %s", recipient, e)
                    slots[pos] = Failure(position=pos, recipient=recipient, sequence=seq, reason=str(e), code="invalid", attempts=0)

        tasks: dict[int, asyncio.Task] = {}
        async with asyncio.TaskGroup() as tg:
            for pos, slot in slots.items():
                if isinstance(slot, TransactionIntent):
                    tasks[pos] = tg.create_task(self.submit(slot), name=f"submit-{slot.sequence}")
        return [tasks[pos].result() if pos in tasks else slots[pos] for pos, _ in batch]

    async def dispatch(
        self,
        recipients: Sequence[str],
        amount: Decimal,
        *,
        stop: asyncio.Event | None = None,
    ) -> AsyncIterator[Outcome]:
        """Yield one outcome per recipient, in recipient order.

        ``stop`` is only honoured between batches.
        """
        batches = batched(recipients, self.batch_size)
        for n, batch in enumerate(batches, start=1):
            if stop is not None and stop.is_set():
                log.warning("Stopped before batch %d/%d", n, len(batches))
                return
            log.info("Batch %d/%d: %d transactions", n, len(batches), len(batch))
            for outcome in await self.run_batch(batch, amount):
                yield outcome
