from decimal import Decimal
from unittest import TestCase

from xrpl.models.amounts import IssuedCurrencyAmount

from disperse.constants import PayoutMode, TransferKind
from disperse.models import Asset, ChainDescriptor, FeeParams, Payout

ISSUER = "rrrrrrrrrrrrrrrrrrrrBZbvji"


class TestAsset(TestCase):
    def test_parse(self):
        self.assertTrue(Asset.parse(None).is_native)
        token = Asset.parse(f"USD:{ISSUER}")
        self.assertEqual((token.currency, token.issuer, token.kind), ("USD", ISSUER, TransferKind.TOKEN))
        for bad in ("USD", ":" + ISSUER, "USD:"):
            with self.assertRaises(ValueError):
                Asset.parse(bad)

    def test_to_amount(self):
        self.assertEqual(Asset.native().to_amount(Decimal("0.000001")), "1")
        amount = Asset.token("USD", ISSUER).to_amount(Decimal("3.300000"))
        self.assertIsInstance(amount, IssuedCurrencyAmount)
        self.assertEqual(amount.value, "3.3")

    def test_quantize_rounds_down(self):
        self.assertEqual(Asset.native().quantize(Decimal("1.2345679")), Decimal("1.234567"))

    def test_symbol(self):
        chain = ChainDescriptor("Other", 5, "ZRP", ("http://a",))
        self.assertEqual(Asset.native().symbol(chain), "ZRP")
        self.assertEqual(Asset.token("EUR", ISSUER).symbol(chain), "EUR")


class TestChainDescriptor(TestCase):
    def test_tx_link(self):
        chain = ChainDescriptor.from_dict({
            "name": "XRPL Testnet", "network_id": 1, "endpoints": ["http://a"],
            "explorer": "https://testnet.xrpl.org/transactions/{hash}",
        })
        self.assertEqual(chain.symbol, "XRP")
        self.assertEqual(chain.tx_link("AB"), "https://testnet.xrpl.org/transactions/AB")
        self.assertEqual(ChainDescriptor("Local", 0, "XRP", ("http://a",)).tx_link("AB"), "AB")


class TestFeeParams(TestCase):
    def test_validation(self):
        with self.assertRaises(ValueError):
            FeeParams(0)
        with self.assertRaises(ValueError):
            FeeParams(12, ledger_horizon=0)
        self.assertEqual(FeeParams.default_for(TransferKind.TOKEN).fee_drops, 20)

    def test_payout_total(self):
        self.assertEqual(Payout(Decimal("1.5"), 4, Decimal(10), PayoutMode.FIXED).total, Decimal(6))
