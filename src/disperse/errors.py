"""Exception hierarchy for dispersal sessions.

Everything raised out of a session derives from ``DisperseError``. Errors that
abort a session before any transaction is sent are marked ``fatal``; the CLI
turns those into a non-zero exit code.
"""

from decimal import Decimal


class DisperseError(Exception):
    fatal = True


class EndpointUnreachable(DisperseError):
    """A single endpoint failed validation."""

    fatal = False

    def __init__(self, url: str, cause: BaseException | str) -> None:
        super().__init__(f"RPC failed: {url} - {cause}")
        self.url = url
        self.cause = cause


class ChainIdMismatch(EndpointUnreachable):
    def __init__(self, url: str, expected: int, reported: int) -> None:
        super().__init__(url, f"network id mismatch: expected {expected} got {reported}")
        self.expected = expected
        self.reported = reported


class NoLiveEndpoints(DisperseError):
    def __init__(self, chain: str, failures: list[EndpointUnreachable]) -> None:
        super().__init__(f"No working RPC endpoints available for {chain}")
        self.chain = chain
        self.failures = failures


class AllEndpointsFailed(DisperseError):
    """Every live endpoint failed the same call."""

    def __init__(self, method: str, errors: dict[str, str]) -> None:
        detail = "; ".join(f"{url}: {err}" for url, err in errors.items())
        super().__init__(f"All endpoints failed {method}: {detail}")
        self.method = method
        self.errors = errors


class AccountNotFound(DisperseError):
    def __init__(self, address: str) -> None:
        super().__init__(f"Account {address} not found on ledger")
        self.address = address


class InsufficientFunds(DisperseError):
    def __init__(self, needed: Decimal, available: Decimal, symbol: str = "") -> None:
        self.needed = needed
        self.available = available
        self.shortfall = needed - available
        unit = f" {symbol}" if symbol else ""
        super().__init__(
            f"Insufficient balance. Needed: {needed}{unit}, available: {available}{unit}, "
            f"short by {self.shortfall}{unit}"
        )


class BalanceTooLowToSplit(DisperseError):
    def __init__(self, spendable: Decimal, recipients: int) -> None:
        super().__init__(f"Spendable balance {spendable} is too low to split across {recipients} recipients")
        self.spendable = spendable
        self.recipients = recipients


class MalformedCredential(DisperseError):
    pass


class UnknownChain(DisperseError):
    pass


class RpcError(DisperseError):
    """A live endpoint answered, but with an error we cannot work around."""

    def __init__(self, method: str, error: str) -> None:
        super().__init__(f"{method} failed: {error}")
        self.method = method
        self.error = error
