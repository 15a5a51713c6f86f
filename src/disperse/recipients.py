import logging
from pathlib import Path
from typing import Iterable

from xrpl.core.addresscodec import is_valid_classic_address, is_valid_xaddress

log = logging.getLogger("disperse.recipients")


def is_valid_address(address: str) -> bool:
    return is_valid_classic_address(address) or is_valid_xaddress(address)


def parse_recipients(lines: Iterable[str]) -> list[str]:
    """Keep valid addresses in order, one payout per line.

    Blank and malformed lines are dropped. An address listed twice is paid twice.
    """
    out: list[str] = []
    for n, line in enumerate(lines, start=1):
        address = line.strip()
        if not address:
            continue
        if not is_valid_address(address):
            log.debug("Dropping line %d: %r is not an address", n, address)
            continue
        out.append(address)
    return out


def load_recipients(path: str | Path) -> list[str]:
    recipients = parse_recipients(Path(path).read_text(encoding="utf-8").splitlines())
    log.info("Found %d valid addresses in %s", len(recipients), path)
    return recipients
