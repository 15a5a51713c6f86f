import asyncio
import dataclasses
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, PositiveInt, condecimal
from xrpl.asyncio.clients import AsyncJsonRpcClient

from disperse import __version__
from disperse.config import cfg, find_chain, load_chains
from disperse.constants import SessionState
from disperse.credentials import SEED_ENV, load_wallet
from disperse.errors import DisperseError, UnknownChain
from disperse.logging_config import setup_logging
from disperse.models import Asset, FeeParams, SessionSummary
from disperse.recipients import parse_recipients
from disperse.session import DispersalSession, SessionSettings

log = logging.getLogger("disperse.app")

SHUTDOWN_TIMEOUT = 30.0


class SessionRequest(BaseModel):
    chain: str
    recipients: list[str]
    amount: Optional[condecimal(gt=0)] = None
    split: bool = False
    confirm: bool = False
    token: str | None = None
    fee_drops: PositiveInt | None = None
    batch_size: PositiveInt | None = None


@dataclass
class SessionRecord:
    id: str
    chain: str
    recipients: int
    state: SessionState = SessionState.RUNNING
    summary: SessionSummary | None = None
    error: str | None = None
    stop: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "chain": self.chain,
            "recipients": self.recipients,
            "state": self.state.value,
            "summary": self.summary.to_dict() if self.summary else None,
            "error": self.error,
        }


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    app.state.sessions = {}
    app.state.client_factory = AsyncJsonRpcClient
    app.state.settings = None
    try:
        app.state.wallet = load_wallet(prompt=False)
        log.info("Signing as %s", app.state.wallet.address)
    except DisperseError:
        app.state.wallet = None
        log.warning("%s not set; sessions cannot be started", SEED_ENV)

    yield

    running = [r for r in app.state.sessions.values() if r.task and not r.task.done()]
    for r in running:
        r.stop.set()
    if running:
        log.info("Waiting for %d sessions to reach a batch boundary", len(running))
        await asyncio.wait([r.task for r in running], timeout=SHUTDOWN_TIMEOUT)


app = FastAPI(title="disperse", version=__version__, lifespan=lifespan)


async def _run_session(record: SessionRecord, session: DispersalSession, amount: Decimal | None) -> None:
    try:
        record.summary = await session.run(amount, stop=record.stop)
        record.state = SessionState.DONE
    except (DisperseError, ValueError) as e:
        log.error("Session %s failed: %s", record.id, e)
        record.error = str(e)
        record.state = SessionState.FAILED


@app.get("/health")
async def health(request: Request):
    wallet = request.app.state.wallet
    return {"status": "ok", "wallet": wallet.address if wallet else None}


@app.get("/chains")
async def chains():
    return [
        {"name": c.name, "symbol": c.symbol, "network_id": c.network_id, "endpoints": list(c.endpoints)}
        for c in load_chains()
    ]


@app.post("/sessions", status_code=202)
async def start_session(body: SessionRequest, request: Request):
    state = request.app.state
    if state.wallet is None:
        raise HTTPException(status_code=503, detail=f"{SEED_ENV} is not configured")
    if (body.amount is None) == (not body.split):
        raise HTTPException(status_code=400, detail="Give exactly one of amount or split")
    if body.split and not body.confirm:
        raise HTTPException(status_code=400, detail="Equal split needs confirm=true")

    try:
        chain = find_chain(body.chain)
    except UnknownChain as e:
        raise HTTPException(status_code=404, detail=str(e))

    recipients = parse_recipients(body.recipients)
    if not recipients:
        raise HTTPException(status_code=400, detail="No valid recipients")

    settings = state.settings or SessionSettings.from_config(cfg)
    if body.batch_size:
        settings = dataclasses.replace(settings, batch_size=body.batch_size)
    try:
        asset = Asset.parse(body.token, settings.token_quantum)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    fee = FeeParams(body.fee_drops, settings.ledger_horizon) if body.fee_drops else None

    session = DispersalSession(
        chain, state.wallet, recipients, asset,
        settings=settings,
        fee=fee,
        client_factory=state.client_factory,
    )
    record = SessionRecord(id=uuid.uuid4().hex, chain=chain.name, recipients=len(recipients))
    record.task = asyncio.create_task(_run_session(record, session, body.amount), name=f"session-{record.id}")
    state.sessions[record.id] = record
    log.info("Started session %s: %d recipients on %s", record.id, len(recipients), chain.name)
    return record.to_dict()


@app.get("/sessions/{session_id}")
async def get_session(session_id: str, request: Request):
    record = request.app.state.sessions.get(session_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Unknown session")
    return record.to_dict()


@app.post("/sessions/{session_id}/stop")
async def stop_session(session_id: str, request: Request):
    record = request.app.state.sessions.get(session_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Unknown session")
    record.stop.set()
    return record.to_dict()
