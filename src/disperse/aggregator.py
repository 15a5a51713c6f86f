import logging
from decimal import Decimal

from disperse.models import ChainDescriptor, Failure, Outcome, SessionSummary, Success

log = logging.getLogger("disperse.aggregator")


class ResultAggregator:
    """Collects outcomes in arrival order and folds them into a ``SessionSummary``."""

    def __init__(self, chain: ChainDescriptor, sender: str, symbol: str, amount: Decimal, recipients: int) -> None:
        self.chain = chain
        self.sender = sender
        self.symbol = symbol
        self.amount = amount
        self.recipients = recipients
        self.outcomes: list[Outcome] = []

    def add(self, outcome: Outcome) -> None:
        self.outcomes.append(outcome)

    @property
    def successes(self) -> list[Success]:
        return [o for o in self.outcomes if isinstance(o, Success)]

    @property
    def failures(self) -> list[Failure]:
        return [o for o in self.outcomes if isinstance(o, Failure)]

    def summary(self, *, aborted: bool = False) -> SessionSummary:
        s = SessionSummary(
            network=self.chain.name,
            network_id=self.chain.network_id,
            sender=self.sender,
            symbol=self.symbol,
            amount=self.amount,
            recipients=self.recipients,
            successes=len(self.successes),
            failures=tuple(self.failures),
            aborted=aborted,
        )
        log.info("Session on %s: %d/%d succeeded (%.2f%%), %s %s committed",
                 s.network, s.successes, s.attempted, s.success_rate, s.total_committed, s.symbol)
        return s
