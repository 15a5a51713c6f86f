import getpass
import os

from xrpl import XRPLException
from xrpl.wallet import Wallet

from disperse.errors import MalformedCredential

SEED_ENV = "DISPERSE_SEED"


def wallet_from_seed(seed: str | None) -> Wallet:
    seed = (seed or "").strip()
    if not seed:
        raise MalformedCredential("No signing seed provided")
    try:
        return Wallet.from_seed(seed)
    except (XRPLException, ValueError) as e:
        raise MalformedCredential(f"Invalid seed: {e.__class__.__name__}") from e


def load_wallet(seed: str | None = None, *, prompt: bool = True) -> Wallet:
    """Build the signing wallet from ``seed``, ``$DISPERSE_SEED`` or a prompt, in that order."""
    seed = seed or os.getenv(SEED_ENV)
    if not seed and prompt:
        seed = getpass.getpass("Enter seed: ")
    return wallet_from_seed(seed)
