"""
disperse: batch payments over XRPL.

Usage:
    disperse chains
    disperse send  --chain <name> --recipients <file> (--amount <x> | --split) [--token CUR:ISSUER] [--yes]
    disperse watch --chain <name> --recipients <file> [--token CUR:ISSUER] [--interval <s>]
    disperse serve [--host <h>] [--port <p>]

The signing seed is read from $DISPERSE_SEED, or prompted for.
"""

import argparse
import asyncio
import contextlib
import signal
import sys
from decimal import Decimal, InvalidOperation

from disperse import __version__
from disperse.config import cfg, find_chain, load_chains
from disperse.constants import PayoutMode
from disperse.credentials import load_wallet
from disperse.endpoints import build_transport
from disperse.errors import DisperseError
from disperse.logging_config import setup_logging
from disperse.models import Asset, ChainDescriptor, FeeParams, Outcome, Payout, SessionSummary, Success, ValidationEvent
from disperse.recipients import load_recipients
from disperse.session import DispersalSession, SessionSettings
from disperse.watcher import BalanceWatcher


def print_event(event: ValidationEvent) -> None:
    if event.ok:
        print(f"  ✓ Valid RPC: {event.url}")
    else:
        print(f"  ✗ Invalid RPC: {event.url} - {event.error}")


def outcome_printer(chain: ChainDescriptor, total: int):
    def _print(o: Outcome) -> None:
        if isinstance(o, Success):
            print(f"✓ TX {o.position}/{total}\n    Receiver: {o.recipient}\n    Tx: {chain.tx_link(o.tx_hash)}")
        else:
            print(f"✗ TX {o.position}/{total}\n    To: {o.recipient}\n    Error: {o.reason} (code {o.code})\n    Attempts: {o.attempts}")
    return _print


def print_summary(summary: SessionSummary) -> None:
    title = "Session stopped early" if summary.aborted else "All transactions completed"
    print(f"\n{title}")
    print(f"  Network:      {summary.network} (ID {summary.network_id})")
    print(f"  Sender:       {summary.sender}")
    print(f"  Total sent:   {summary.total_committed} {summary.symbol}")
    print(f"  Success rate: {summary.successes}/{summary.attempted} ({summary.success_rate:.2f}%)")
    for f in summary.failures:
        print(f"  ✗ #{f.position} {f.recipient}: {f.reason} (code {f.code}, attempts {f.attempts})")


def confirm(question: str) -> bool:
    return input(f"{question} [y/N] ").strip().lower() in {"y", "yes"}


@contextlib.contextmanager
def stop_on_interrupt(stop: asyncio.Event):
    """While dispatching, Ctrl-C sets ``stop`` so the batch in flight can finish.

    Outside this block Ctrl-C raises KeyboardInterrupt as usual.
    """
    loop = asyncio.get_running_loop()
    installed = False
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, stop.set)
        installed = True
    try:
        yield stop
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def _settings(args: argparse.Namespace) -> SessionSettings:
    return SessionSettings.from_config(cfg, batch_size=args.batch_size, max_attempts=args.retries)


def _fee(args: argparse.Namespace, settings: SessionSettings) -> FeeParams | None:
    if args.fee_drops is None:
        return None
    return FeeParams(fee_drops=args.fee_drops, ledger_horizon=settings.ledger_horizon)


def cmd_chains(args: argparse.Namespace) -> int:
    for chain in load_chains():
        print(f"{chain.name} ({chain.symbol}) - Network ID: {chain.network_id}")
        for url in chain.endpoints:
            print(f"    {url}")
    return 0


async def _execute(session: DispersalSession, payout: Payout) -> int:
    with stop_on_interrupt(asyncio.Event()) as stop:
        summary = await session.execute(payout, stop=stop, on_outcome=outcome_printer(session.chain, len(session.recipients)))
    print_summary(summary)
    return 0


def cmd_send(args: argparse.Namespace) -> int:
    chain = find_chain(args.chain)
    recipients = load_recipients(args.recipients)
    print(f"Found {len(recipients)} valid addresses")
    settings = _settings(args)
    asset = Asset.parse(args.token, settings.token_quantum)
    amount = None if args.split else Decimal(args.amount)
    wallet = load_wallet()

    print(f"Validating RPC endpoints for {chain.name}...")
    session = DispersalSession(
        chain, wallet, recipients, asset,
        settings=settings,
        fee=_fee(args, settings),
        on_event=print_event,
    )
    payout = asyncio.run(session.prepare(amount))
    print(f"Balance: {payout.balance} {session.symbol}")
    if payout.mode is PayoutMode.SPLIT and not args.yes:
        question = f"Send {payout.amount} {session.symbol} to each of {payout.recipients} recipients ({payout.total} total)?"
        if not confirm(question):
            print("Nothing sent.")
            return 0
    return asyncio.run(_execute(session, payout))


async def _watch(args: argparse.Namespace) -> int:
    chain = find_chain(args.chain)
    recipients = load_recipients(args.recipients)
    settings = _settings(args)
    asset = Asset.parse(args.token, settings.token_quantum)
    wallet = load_wallet()
    watch_cfg = cfg["watch"]

    stop = asyncio.Event()
    transport = await build_transport(
        chain,
        timeout=settings.rpc_timeout,
        strict_identity=settings.strict_identity,
        on_event=print_event,
    )
    watcher = BalanceWatcher(
        transport,
        wallet.address,
        asset,
        poll_interval=args.interval or float(watch_cfg.get("poll_interval", 10)),
        min_increase=Decimal(str(watch_cfg.get("min_increase", "1"))),
        stop=stop,
    )
    print(f"Watching {wallet.address} on {chain.name}. Ctrl-C to stop.")
    async for balance in watcher:
        session = DispersalSession(
            chain, wallet, recipients, asset,
            settings=settings,
            fee=_fee(args, settings),
            transport=transport,
        )
        try:
            payout = await session.prepare(None)
        except DisperseError as e:
            print(f"Balance now {balance}, not dispersing: {e}")
            continue
        question = f"Balance now {balance}. Send {payout.amount} {session.symbol} to each of {payout.recipients} recipients?"
        if not await asyncio.to_thread(confirm, question):
            continue
        with stop_on_interrupt(stop):
            summary = await session.execute(payout, stop=stop, on_outcome=outcome_printer(chain, len(recipients)))
        print_summary(summary)
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    return asyncio.run(_watch(args))


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("disperse.app:app", host=args.host, port=args.port, lifespan="on")
    return 0


def _dispatch_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("-c", "--chain", required=True, help="Chain name or network id from the catalog.")
    p.add_argument("-r", "--recipients", required=True, help="File with one address per line.")
    p.add_argument("-t", "--token", help="Issued currency as CUR:ISSUER. XRP when omitted.")
    p.add_argument("--fee-drops", type=int, help="Fee per transaction in drops.")
    p.add_argument("--batch-size", type=int, help="Transactions per batch.")
    p.add_argument("--retries", type=int, help="Attempts per transaction.")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="disperse", description="Batch payments over XRPL.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", help="Override LOG_LEVEL.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("chains", help="List known chains.")
    p.set_defaults(func=cmd_chains)

    p = sub.add_parser("send", help="Send to every recipient once.")
    _dispatch_options(p)
    how = p.add_mutually_exclusive_group(required=True)
    how.add_argument("-a", "--amount", help="Amount per recipient.")
    how.add_argument("--split", action="store_true", help="Split the balance equally.")
    p.add_argument("-y", "--yes", action="store_true", help="Skip the split confirmation.")
    p.set_defaults(func=cmd_send)

    p = sub.add_parser("watch", help="Offer an equal split each time funds arrive.")
    _dispatch_options(p)
    p.add_argument("-i", "--interval", type=float, help="Seconds between balance polls.")
    p.set_defaults(func=cmd_watch)

    p = sub.add_parser("serve", help="Run the HTTP API.")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.set_defaults(func=cmd_serve)

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    try:
        return args.func(args)
    except DisperseError as e:
        print(f"Critical error: {e}", file=sys.stderr)
        return 1
    except (ValueError, InvalidOperation, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
