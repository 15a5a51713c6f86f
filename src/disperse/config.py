import os
import tomllib
from pathlib import Path

from disperse.errors import UnknownChain
from disperse.models import ChainDescriptor

pkg_root = Path(__file__).parent
config_file = Path(os.getenv("DISPERSE_CONFIG", pkg_root / "config.toml"))


def load_config(path: str | Path | None = None) -> dict:
    cfg = tomllib.loads(Path(path or config_file).read_text())
    cfg.setdefault("dispatch", {})
    cfg.setdefault("rpc", {})
    cfg.setdefault("fees", {})
    cfg.setdefault("payout", {})
    cfg.setdefault("watch", {})
    cfg.setdefault("chains", [])
    return cfg


def load_chains(conf: dict | None = None) -> list[ChainDescriptor]:
    conf = conf if conf is not None else cfg
    return [ChainDescriptor.from_dict(c) for c in conf["chains"]]


def find_chain(name: str, conf: dict | None = None) -> ChainDescriptor:
    """Look a chain up by name (case-insensitive) or by its network id."""
    for chain in load_chains(conf):
        if chain.name.lower() == name.lower() or str(chain.network_id) == name:
            return chain
    raise UnknownChain(f"Unknown chain {name!r}")


cfg = load_config()
