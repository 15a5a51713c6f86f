"""Endpoint validation and the fallback transport built on top of it.

Every rippled URL in a chain descriptor is probed on its own; the ones that
answer are wrapped in a ``PinnedClient`` so the network identity downstream
code sees is always the one from the descriptor, never whatever a node happens
to report. ``FallbackTransport`` then routes each request through the live
endpoints in declared order until one gives a usable answer.
"""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Callable, Protocol

import httpx
from xrpl import XRPLException
from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.models.requests import LedgerCurrent, ServerInfo
from xrpl.models.requests.request import Request
from xrpl.models.response import Response

from disperse.constants import RPC_TIMEOUT, TRANSPORT_ERRORS
from disperse.errors import AllEndpointsFailed, ChainIdMismatch, EndpointUnreachable, NoLiveEndpoints
from disperse.models import ChainDescriptor, ValidationEvent

log = logging.getLogger("disperse.endpoints")

# What a flaky node or network can throw at us. Anything else is a bug and propagates.
TRANSPORT_EXCEPTIONS = (httpx.HTTPError, XRPLException, OSError, TimeoutError, ValueError, KeyError)


class RpcClient(Protocol):
    async def request(self, request: Request) -> Response: ...


class PinnedClient:
    """An ``RpcClient`` that reports a fixed network id.

    ``server_info`` answers are rewritten so ``info.network_id`` is the pinned
    value; every other request passes through untouched.
    """

    def __init__(self, client: RpcClient, network_id: int, url: str | None = None) -> None:
        self._client = client
        self.network_id = network_id
        self.url = url or getattr(client, "url", "")

    async def get_network_id(self) -> int:
        return self.network_id

    async def request(self, request: Request) -> Response:
        resp = await self._client.request(request)
        if isinstance(request, ServerInfo) and resp.is_successful():
            info = {**resp.result.get("info", {}), "network_id": self.network_id}
            resp = dataclasses.replace(resp, result={**resp.result, "info": info})
        return resp


@dataclass(frozen=True, slots=True)
class ValidatedEndpoint:
    url: str
    client: PinnedClient
    ledger_index: int


def _error_of(resp: Response) -> str:
    return str(resp.result.get("error") or resp.result.get("error_message") or resp.status)


async def validate_endpoint(
    url: str,
    chain: ChainDescriptor,
    *,
    timeout: float = RPC_TIMEOUT,
    strict_identity: bool = False,
    client_factory: Callable[[str], RpcClient] = AsyncJsonRpcClient,
) -> ValidatedEndpoint:
    """Prove ``url`` is live and bind it to ``chain``'s network id."""
    try:
        raw = client_factory(url)
        info = await asyncio.wait_for(raw.request(ServerInfo()), timeout=timeout)
        if not info.is_successful():
            raise EndpointUnreachable(url, _error_of(info))

        reported = info.result.get("info", {}).get("network_id")
        if reported is not None and int(reported) != chain.network_id:
            if strict_identity:
                raise ChainIdMismatch(url, chain.network_id, int(reported))
            log.warning("%s reports network id %s, pinning to %s", url, reported, chain.network_id)

        client = PinnedClient(raw, chain.network_id, url=url)
        current = await asyncio.wait_for(client.request(LedgerCurrent()), timeout=timeout)
        if not current.is_successful():
            raise EndpointUnreachable(url, _error_of(current))
        ledger_index = int(current.result["ledger_current_index"])
    except TRANSPORT_EXCEPTIONS as e:
        raise EndpointUnreachable(url, f"{e.__class__.__name__}: {e}") from e

    return ValidatedEndpoint(url=url, client=client, ledger_index=ledger_index)


class FallbackTransport:
    """One logical transport over several validated endpoints."""

    def __init__(self, chain: ChainDescriptor, endpoints: list[ValidatedEndpoint], *, timeout: float = RPC_TIMEOUT) -> None:
        if not endpoints:
            raise NoLiveEndpoints(chain.name, [])
        self.chain = chain
        self.timeout = timeout
        self._endpoints = list(endpoints)

    @property
    def network_id(self) -> int:
        return self.chain.network_id

    @property
    def urls(self) -> list[str]:
        return [ep.url for ep in self._endpoints]

    async def get_network_id(self) -> int:
        return self.network_id

    async def request(self, request: Request) -> Response:
        errors: dict[str, str] = {}
        for ep in self._endpoints:
            try:
                resp = await asyncio.wait_for(ep.client.request(request), timeout=self.timeout)
            except TRANSPORT_EXCEPTIONS as e:
                errors[ep.url] = f"{e.__class__.__name__}: {e}"
                log.debug("%s failed %s: %s", ep.url, request.method.value, errors[ep.url])
                continue

            if not resp.is_successful() and resp.result.get("error") in TRANSPORT_ERRORS:
                errors[ep.url] = _error_of(resp)
                log.debug("%s unusable for %s: %s", ep.url, request.method.value, errors[ep.url])
                continue
            return resp

        raise AllEndpointsFailed(request.method.value, errors)


async def build_transport(
    chain: ChainDescriptor,
    *,
    timeout: float = RPC_TIMEOUT,
    strict_identity: bool = False,
    client_factory: Callable[[str], RpcClient] = AsyncJsonRpcClient,
    on_event: Callable[[ValidationEvent], None] | None = None,
) -> FallbackTransport:
    """Validate every endpoint of ``chain`` and aggregate the live ones.

    Raises ``NoLiveEndpoints`` when none of them validate.
    """
    log.info("Validating %d RPC endpoints for %s", len(chain.endpoints), chain.name)
    results = await asyncio.gather(
        *(
            validate_endpoint(url, chain, timeout=timeout, strict_identity=strict_identity, client_factory=client_factory)
            for url in chain.endpoints
        ),
        return_exceptions=True,
    )

    live: list[ValidatedEndpoint] = []
    failures: list[EndpointUnreachable] = []
    for url, res in zip(chain.endpoints, results):
        if isinstance(res, EndpointUnreachable):
            failures.append(res)
            event = ValidationEvent(url=url, ok=False, error=str(res.cause))
            log.warning("Invalid RPC: %s - %s", url, res.cause)
        elif isinstance(res, BaseException):
            raise res
        else:
            live.append(res)
            event = ValidationEvent(url=url, ok=True)
            log.info("Valid RPC: %s (ledger %s)", url, res.ledger_index)
        if on_event:
            on_event(event)

    if not live:
        raise NoLiveEndpoints(chain.name, failures)

    log.info("Network locked to %s (%s) over %d/%d endpoints", chain.name, chain.network_id, len(live), len(chain.endpoints))
    return FallbackTransport(chain, live, timeout=timeout)
