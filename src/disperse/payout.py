"""Per-recipient payout computation.

Two modes, both yielding one immutable ``Payout`` for the whole session:

* fixed: the caller names the amount; we only check that
  ``amount * recipients`` fits in the balance read right before the check.
* split: the balance (minus fees and, for XRP, the account reserve) is divided
  evenly in whole drops / token quanta. Remainder dust stays with the sender.

The balance is read exactly once per computation; nothing is re-read while a
dispersal runs.
"""

import logging
from decimal import Decimal, ROUND_DOWN

from xrpl.models.requests import AccountInfo, AccountLines
from xrpl.utils import drops_to_xrp

from disperse.constants import ACCOUNT_RESERVE_DROPS, PayoutMode
from disperse.endpoints import RpcClient
from disperse.errors import AccountNotFound, BalanceTooLowToSplit, InsufficientFunds, RpcError
from disperse.models import Asset, FeeParams, Payout

log = logging.getLogger("disperse.payout")


async def read_balance(transport: RpcClient, address: str, asset: Asset) -> Decimal:
    if asset.is_native:
        resp = await transport.request(AccountInfo(account=address, ledger_index="current", strict=True))
        if not resp.is_successful():
            if resp.result.get("error") == "actNotFound":
                raise AccountNotFound(address)
            raise RpcError("account_info", str(resp.result.get("error")))
        return drops_to_xrp(str(resp.result["account_data"]["Balance"]))

    resp = await transport.request(AccountLines(account=address, peer=asset.issuer, ledger_index="current"))
    if not resp.is_successful():
        if resp.result.get("error") == "actNotFound":
            raise AccountNotFound(address)
        raise RpcError("account_lines", str(resp.result.get("error")))
    for line in resp.result.get("lines", []):
        if line.get("currency") == asset.currency and line.get("account") == asset.issuer:
            return Decimal(line["balance"])
    # No trust line means nothing to send.
    return Decimal(0)


class PayoutCalculator:
    def __init__(
        self,
        transport: RpcClient,
        address: str,
        asset: Asset,
        *,
        fee: FeeParams | None = None,
        account_reserve_drops: int = ACCOUNT_RESERVE_DROPS,
        symbol: str | None = None,
    ) -> None:
        self.transport = transport
        self.address = address
        self.asset = asset
        self.fee = fee or FeeParams.default_for(asset.kind)
        self.account_reserve_drops = account_reserve_drops
        self.symbol = symbol or asset.symbol()

    async def fixed(self, amount: Decimal, recipients: int) -> Payout:
        if recipients < 1:
            raise ValueError("no recipients")
        if amount <= 0:
            raise ValueError(f"amount must be positive, got {amount}")
        if self.asset.quantize(amount) != amount:
            raise ValueError(f"amount {amount} is finer than the smallest unit {self.asset.quantum}")

        balance = await read_balance(self.transport, self.address, self.asset)
        needed = amount * recipients
        log.info("Balance %s %s, needed %s for %d recipients", balance, self.symbol, needed, recipients)
        if needed > balance:
            raise InsufficientFunds(needed, balance, self.symbol)
        return Payout(amount=amount, recipients=recipients, balance=balance, mode=PayoutMode.FIXED)

    def reserve(self, recipients: int) -> Decimal:
        """What split mode keeps back before dividing. Token fees are paid in XRP."""
        if not self.asset.is_native:
            return Decimal(0)
        return drops_to_xrp(str(self.fee.fee_drops * recipients + self.account_reserve_drops))

    async def split(self, recipients: int) -> Payout:
        if recipients < 1:
            raise ValueError("no recipients")

        balance = await read_balance(self.transport, self.address, self.asset)
        spendable = balance - self.reserve(recipients)
        units = 0
        if spendable > 0:
            units = int((spendable / self.asset.quantum).to_integral_value(rounding=ROUND_DOWN)) // recipients
        share = units * self.asset.quantum
        if share <= 0:
            raise BalanceTooLowToSplit(max(spendable, Decimal(0)), recipients)

        log.info("Splitting %s %s across %d recipients: %s each", spendable, self.symbol, recipients, share)
        return Payout(amount=share, recipients=recipients, balance=balance, mode=PayoutMode.SPLIT)
