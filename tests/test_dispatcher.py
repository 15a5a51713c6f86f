"""Batching, sequencing and retry behaviour of the dispatcher."""

import asyncio
import random
from decimal import Decimal
from unittest import IsolatedAsyncioTestCase, TestCase

import httpx
from xrpl.core.binarycodec import decode
from xrpl.models.transactions import Payment
from xrpl.wallet import Wallet

from disperse.dispatcher import BatchDispatcher, RetryPolicy, _txid_from_signed_blob_hex, batched, sign_transaction
from disperse.endpoints import build_transport
from disperse.models import Asset, Failure, FeeParams, Success
from disperse.sequencer import SequenceAllocator

from fakes import FakeNode, accepted, addresses, chain_for, factory, ok

NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0)


def rejected(code: str = "telINSUF_FEE_P"):
    return ok({"engine_result": code, "engine_result_message": "Fee insufficient to process the transaction."})


async def make_dispatcher(node: FakeNode, *, batch_size: int = 5, retry: RetryPolicy = NO_WAIT, submit_timeout: float = 5,
                          asset: Asset | None = None, network_id: int = 1) -> BatchDispatcher:
    transport = await build_transport(chain_for(node, network_id=network_id), client_factory=factory(node))
    wallet = Wallet.create()
    return BatchDispatcher(
        transport,
        wallet,
        SequenceAllocator(transport, wallet.address),
        asset or Asset.native(),
        FeeParams(12),
        batch_size=batch_size,
        retry=retry,
        submit_timeout=submit_timeout,
    )


async def collect(dispatcher: BatchDispatcher, recipients, amount=Decimal(1), **kw):
    return [o async for o in dispatcher.dispatch(recipients, amount, **kw)]


class TestHelpers(TestCase):
    def test_batched_sizes(self):
        batches = batched([str(i) for i in range(12)], 5)
        self.assertEqual([len(b) for b in batches], [5, 5, 2])
        self.assertEqual(batches[1][0], (6, "5"))

    def test_linear_backoff(self):
        policy = RetryPolicy(max_attempts=3, base_delay=0.5)
        self.assertEqual([policy.delay(a) for a in (1, 2, 3)], [0.5, 1.0, 1.5])

    def test_custom_backoff(self):
        policy = RetryPolicy(base_delay=1, backoff=lambda base, attempt: base * 2 ** attempt)
        self.assertEqual(policy.delay(3), 8)

    def test_policy_needs_an_attempt(self):
        with self.assertRaises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_signed_blob_carries_sequence(self):
        wallet = Wallet.create()
        payment = Payment(account=wallet.address, destination=addresses(1)[0], amount="1000", sequence=5, fee="12")
        blob, tx_hash = sign_transaction(payment, wallet)
        self.assertEqual(decode(blob)["Sequence"], 5)
        self.assertEqual(len(tx_hash), 64)


class TestRetries(IsolatedAsyncioTestCase):
    async def test_succeeds_on_third_attempt(self):
        def flaky(blob, attempt):
            return accepted(blob) if attempt == 3 else rejected()

        node = FakeNode(on_submit=flaky)
        outcomes = await collect(await make_dispatcher(node), addresses(1))
        self.assertIsInstance(outcomes[0], Success)
        self.assertEqual(outcomes[0].attempts, 3)
        self.assertEqual(len(node.submitted), 3)
        # Every retry resubmits the same signed blob.
        self.assertEqual(len(set(node.submitted)), 1)

    async def test_gives_up_after_max_attempts(self):
        node = FakeNode(on_submit=lambda blob, attempt: rejected("tefPAST_SEQ"))
        outcomes = await collect(await make_dispatcher(node), addresses(1))
        failure = outcomes[0]
        self.assertIsInstance(failure, Failure)
        self.assertEqual(failure.attempts, 3)
        self.assertEqual(failure.code, "tefPAST_SEQ")
        self.assertEqual(len(node.submitted), 3)

    async def test_timeout_counts_as_an_attempt(self):
        async def hang(blob, attempt):
            await asyncio.sleep(10)

        node = FakeNode(on_submit=hang)
        outcomes = await collect(await make_dispatcher(node, submit_timeout=0.01), addresses(1))
        self.assertEqual(outcomes[0].code, "timeout")
        self.assertEqual(outcomes[0].attempts, 3)

    async def test_transport_error_is_recoverable(self):
        def drop_first(blob, attempt):
            if attempt == 1:
                raise httpx.ReadError("reset by peer")
            return accepted(blob)

        node = FakeNode(on_submit=drop_first)
        outcomes = await collect(await make_dispatcher(node), addresses(2))
        self.assertTrue(all(isinstance(o, Success) and o.attempts == 2 for o in outcomes))

    async def test_queued_and_claimed_results_count_as_accepted(self):
        results = iter(["terQUEUED", "tecNO_DST_INSUF_XRP"])
        node = FakeNode(on_submit=lambda blob, attempt: accepted(blob, next(results)))
        outcomes = await collect(await make_dispatcher(node, batch_size=1), addresses(2))
        self.assertEqual([o.engine_result for o in outcomes], ["terQUEUED", "tecNO_DST_INSUF_XRP"])

    async def test_lost_acknowledgment_then_already_applied(self):
        def ack_lost(blob, attempt):
            if attempt == 1:
                raise httpx.ReadTimeout("read timed out")
            return ok({"engine_result": "tefALREADY", "engine_result_message": "The exact transaction was already in this ledger."})

        node = FakeNode(on_submit=ack_lost)
        outcomes = await collect(await make_dispatcher(node), addresses(1))
        success = outcomes[0]
        self.assertIsInstance(success, Success)
        self.assertEqual(success.attempts, 2)
        self.assertEqual(success.engine_result, "tefALREADY")
        self.assertEqual(success.tx_hash, _txid_from_signed_blob_hex(node.submitted[0]))
        self.assertEqual(len(node.submitted), 2)

    async def test_already_applied_on_first_attempt_is_a_failure(self):
        node = FakeNode(on_submit=lambda blob, attempt: rejected("tefALREADY"))
        outcomes = await collect(await make_dispatcher(node, retry=RetryPolicy(max_attempts=1, base_delay=0)), addresses(1))
        self.assertIsInstance(outcomes[0], Failure)
        self.assertEqual(outcomes[0].code, "tefALREADY")


class TestBatches(IsolatedAsyncioTestCase):
    async def test_twelve_recipients_in_batches_of_five(self):
        async def jitter(blob, attempt):
            await asyncio.sleep(random.random() / 100)
            return accepted(blob)

        node = FakeNode(sequence=100, on_submit=jitter)
        recipients = addresses(12)
        outcomes = await collect(await make_dispatcher(node), recipients)

        self.assertEqual([o.recipient for o in outcomes], recipients)
        self.assertEqual([o.position for o in outcomes], list(range(1, 13)))
        self.assertEqual([o.sequence for o in outcomes], list(range(100, 112)))

        sent = {tx["Destination"]: tx["Sequence"] for tx in node.sent()}
        batches = [[sent[r] for r in recipients[i:i + 5]] for i in range(0, 12, 5)]
        self.assertEqual(batches, [list(range(100, 105)), list(range(105, 110)), [110, 111]])
        self.assertEqual(node.calls.count("account_info"), 1)

    async def test_failed_sequence_is_never_reissued(self):
        recipients = addresses(7)
        doomed = recipients[1]

        def fail_one(blob, attempt):
            return rejected() if decode(blob)["Destination"] == doomed else accepted(blob)

        node = FakeNode(sequence=10, on_submit=fail_one)
        outcomes = await collect(await make_dispatcher(node, batch_size=3), recipients)

        failure = outcomes[1]
        self.assertIsInstance(failure, Failure)
        later = [tx["Sequence"] for tx in node.sent() if tx["Destination"] != doomed]
        self.assertNotIn(failure.sequence, later)
        self.assertEqual(sorted(later + [failure.sequence]), list(range(10, 17)))

    async def test_stop_between_batches(self):
        node = FakeNode(sequence=1)
        dispatcher = await make_dispatcher(node, batch_size=5)
        stop = asyncio.Event()
        outcomes = []
        async for o in dispatcher.dispatch(addresses(12), Decimal(1), stop=stop):
            outcomes.append(o)
            stop.set()
        # The batch in flight completes; nothing after it starts.
        self.assertEqual(len(outcomes), 5)
        self.assertEqual(dispatcher.sequencer.next_unused, 6)

    async def test_unbuildable_payment_still_gets_an_outcome(self):
        node = FakeNode(sequence=1)
        recipients = [addresses(1)[0], "not-an-address", addresses(1)[0]]
        outcomes = await collect(await make_dispatcher(node), recipients)
        self.assertEqual([o.ok for o in outcomes], [True, False, True])
        self.assertEqual(outcomes[1].attempts, 0)
        self.assertIsNone(outcomes[1].sequence)
        self.assertEqual([tx["Sequence"] for tx in node.sent()], [1, 2])

    async def test_paying_the_sender_takes_no_sequence(self):
        node = FakeNode(sequence=10)
        dispatcher = await make_dispatcher(node)
        r1, r2 = addresses(2)
        outcomes = await collect(dispatcher, [r1, dispatcher.wallet.address, r2])

        self.assertEqual([o.ok for o in outcomes], [True, False, True])
        self.assertEqual(outcomes[1].code, "invalid")
        self.assertIsNone(outcomes[1].sequence)
        self.assertEqual([tx["Sequence"] for tx in node.sent()], [10, 11])
        self.assertEqual(dispatcher.sequencer.next_unused, 12)

    async def test_batch_of_only_bad_payments_reads_nothing(self):
        node = FakeNode(sequence=1)
        dispatcher = await make_dispatcher(node)
        outcomes = await collect(dispatcher, ["not-an-address", dispatcher.wallet.address])
        self.assertEqual([o.code for o in outcomes], ["invalid", "invalid"])
        self.assertIsNone(dispatcher.sequencer.next_unused)
        self.assertNotIn("account_info", node.calls)

    async def test_unexpected_submit_error_keeps_the_rest_of_the_batch(self):
        recipients = addresses(4)

        def explode_on_second(blob, attempt):
            if decode(blob)["Destination"] == recipients[1]:
                raise RuntimeError("node returned garbage")
            return accepted(blob)

        node = FakeNode(on_submit=explode_on_second)
        outcomes = await collect(await make_dispatcher(node), recipients)
        self.assertEqual([o.ok for o in outcomes], [True, False, True, True])
        self.assertEqual(outcomes[1].code, "error")
        self.assertEqual(outcomes[1].attempts, 1)
        self.assertIn("RuntimeError", outcomes[1].reason)

    async def test_unreadable_ledger_fails_batch_without_burning_sequences(self):
        node = FakeNode(sequence=1)
        dispatcher = await make_dispatcher(node)
        node.down = True
        outcomes = await collect(dispatcher, addresses(3))
        self.assertTrue(all(isinstance(o, Failure) and o.sequence is None for o in outcomes))
        self.assertIsNone(dispatcher.sequencer.next_unused)


class TestIntents(IsolatedAsyncioTestCase):
    async def test_payment_fields(self):
        node = FakeNode(sequence=3, ledger=500)
        dispatcher = await make_dispatcher(node)
        recipient = addresses(1)[0]
        await collect(dispatcher, [recipient], Decimal("1.5"))
        tx = node.sent()[0]
        self.assertEqual(tx["Amount"], "1500000")
        self.assertEqual(tx["Fee"], "12")
        self.assertEqual(tx["LastLedgerSequence"], 520)
        self.assertEqual(tx["Account"], dispatcher.wallet.address)
        self.assertNotIn("NetworkID", tx)

    async def test_network_id_on_high_id_networks(self):
        node = FakeNode()
        dispatcher = await make_dispatcher(node, network_id=21338)
        await collect(dispatcher, addresses(1))
        self.assertEqual(node.sent()[0]["NetworkID"], 21338)

    async def test_token_amount(self):
        issuer = Wallet.create().address
        node = FakeNode()
        dispatcher = await make_dispatcher(node, asset=Asset.token("USD", issuer))
        await collect(dispatcher, addresses(1), Decimal("2.25"))
        amount = node.sent()[0]["Amount"]
        self.assertEqual(amount["currency"], "USD")
        self.assertEqual(amount["issuer"], issuer)
        self.assertEqual(Decimal(amount["value"]), Decimal("2.25"))
