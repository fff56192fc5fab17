"""Attestation pipeline: turn a market target into a verifiable proof.

Flow (``AttestationPipeline.attest``):
1. prepare_request: build the Web2Json request for the market URL
2. submit_request: hand it to the attestation protocol, learn the voting round
3. wait for the round to finalize (polling, round_poll_interval)
4. retrieve_proof: fetch the Merkle proof and attested response

The protocol itself is a black box. ``Web2JsonPipeline`` talks to the hosted
verifier and data-availability layer over HTTP and delegates the on-chain
submission to a ``RoundSubmitter``. ``LocalAttestationPipeline`` plays every
role in-process against a RoundRootRegistry, for test deployments and
integration tests.
"""

import asyncio
import itertools
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from eth_abi.exceptions import DecodingError

from polyflux.config import KeeperSettings
from polyflux.constants import MAX_QUESTION_LENGTH
from polyflux.exceptions import AttestationError
from polyflux.keeper.polymarket import PolymarketClient
from polyflux.keeper.transform import (
    MARKET_DTO_ABI_SIGNATURE,
    build_post_process_jq,
    decode_market_dto,
    market_url,
    to_payload,
)
from polyflux.logging import get_logger
from polyflux.models import AttestationProof, AttestationRequest, MarketPayload, MarketTarget
from polyflux.oracle.verifier import RoundRootRegistry, build_merkle_tree, leaf_hash

logger = get_logger(__name__)


def to_utf8_hex(value: str) -> str:
    """Right-padded bytes32 hex encoding used for attestation type and source id."""
    return "0x" + value.encode("utf-8").hex().ljust(64, "0")


@dataclass(frozen=True)
class PreparedRequest:
    """A request accepted by the verifier, ready for submission."""

    target: MarketTarget
    request: AttestationRequest
    abi_encoded_request: str


class AttestationPipeline(ABC):
    """Abstract attestation provider used by the Keeper.

    Args:
        settings: Keeper settings (URLs, rounding, poll intervals).
    """

    def __init__(self, settings: KeeperSettings | None = None) -> None:
        self._settings = settings or KeeperSettings()

    def build_request(self, target: MarketTarget) -> AttestationRequest:
        """The attested HTTP request for a market. Deterministic per target."""
        return AttestationRequest(
            url=market_url(self._settings.polymarket_api, target.condition_id),
            http_method="GET",
            post_process_jq=build_post_process_jq(
                self._settings.price_rounding_bps, MAX_QUESTION_LENGTH
            ),
            abi_signature=MARKET_DTO_ABI_SIGNATURE,
        )

    @abstractmethod
    async def prepare_request(self, target: MarketTarget) -> PreparedRequest:
        ...

    @abstractmethod
    async def submit_request(self, prepared: PreparedRequest) -> int:
        """Submit and return the voting round the request landed in."""
        ...

    @abstractmethod
    async def is_round_finalized(self, voting_round: int) -> bool:
        ...

    @abstractmethod
    async def retrieve_proof(self, prepared: PreparedRequest, voting_round: int) -> AttestationProof:
        ...

    async def wait_for_round(self, voting_round: int) -> None:
        """Poll until the round is finalized. Cancel the task to give up."""
        while not await self.is_round_finalized(voting_round):
            logger.debug("waiting_for_round", voting_round=voting_round)
            await asyncio.sleep(self._settings.round_poll_interval)

    async def attest(self, target: MarketTarget) -> AttestationProof:
        """Run the full pipeline for one market."""
        prepared = await self.prepare_request(target)
        voting_round = await self.submit_request(prepared)
        logger.info("attestation_submitted", market_id=target.slug, voting_round=voting_round)
        await self.wait_for_round(voting_round)
        proof = await self.retrieve_proof(prepared, voting_round)
        logger.info("proof_retrieved", market_id=target.slug, voting_round=voting_round)
        return proof


class RoundSubmitter(ABC):
    """On-chain side of the protocol: request submission and round finality."""

    @abstractmethod
    async def submit(self, abi_encoded_request: str) -> int:
        """Submit the request (paying the fee) and return its voting round."""
        ...

    @abstractmethod
    async def is_finalized(self, voting_round: int) -> bool:
        ...


class Web2JsonPipeline(AttestationPipeline):
    """Pipeline backed by a hosted Web2Json verifier and DA layer.

    Args:
        settings: Keeper settings.
        submitter: Performs the on-chain submission and finality checks.
        http_client: Optional httpx.AsyncClient (tests inject a MockTransport).
    """

    def __init__(
        self,
        settings: KeeperSettings | None,
        submitter: RoundSubmitter,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(settings)
        self._submitter = submitter
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self._settings.http_timeout_seconds)

    async def close(self) -> None:
        if self._owns_client and not self._http.is_closed:
            await self._http.aclose()

    async def prepare_request(self, target: MarketTarget) -> PreparedRequest:
        request = self.build_request(target)
        body = {
            "attestationType": to_utf8_hex(self._settings.attestation_type),
            "sourceId": to_utf8_hex(self._settings.source_id),
            "requestBody": {
                "url": request.url,
                "httpMethod": request.http_method,
                "headers": "{}",
                "queryParams": "{}",
                "body": "{}",
                "postProcessJq": request.post_process_jq,
                "abiSignature": request.abi_signature,
            },
        }
        url = f"{self._settings.verifier_url}{self._settings.attestation_type}/prepareRequest"
        try:
            response = await self._http.post(
                url,
                json=body,
                headers={"X-API-KEY": self._settings.verifier_api_key.get_secret_value()},
            )
        except httpx.HTTPError as exc:
            raise AttestationError(f"prepareRequest failed: {exc}") from exc
        if response.status_code != 200:
            raise AttestationError(
                f"prepareRequest returned {response.status_code}: {response.text}"
            )
        try:
            abi_encoded = response.json().get("abiEncodedRequest")
        except ValueError as exc:
            raise AttestationError("prepareRequest returned invalid JSON") from exc
        if not abi_encoded:
            raise AttestationError(f"Verifier rejected request for {target.slug}: {response.text}")
        return PreparedRequest(target=target, request=request, abi_encoded_request=abi_encoded)

    async def submit_request(self, prepared: PreparedRequest) -> int:
        return await self._submitter.submit(prepared.abi_encoded_request)

    async def is_round_finalized(self, voting_round: int) -> bool:
        return await self._submitter.is_finalized(voting_round)

    async def retrieve_proof(self, prepared: PreparedRequest, voting_round: int) -> AttestationProof:
        """Poll the DA layer until the proof for the request is available.

        Raises:
            AttestationError: No proof after proof_poll_attempts tries.
        """
        url = f"{self._settings.da_layer_url}api/v1/fdc/proof-by-request-round"
        body = {"votingRoundId": voting_round, "requestBytes": prepared.abi_encoded_request}

        # The DA layer needs a moment after finalization to index the round
        await asyncio.sleep(self._settings.proof_initial_delay)
        for attempt in range(self._settings.proof_poll_attempts):
            try:
                response = await self._http.post(url, json=body)
                if response.status_code == 200:
                    data = response.json()
                    if data.get("response"):
                        return self._proof_from_da(data)
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning(
                    "da_layer_request_failed",
                    attempt=attempt + 1,
                    voting_round=voting_round,
                    error=str(exc),
                )
            await asyncio.sleep(self._settings.proof_poll_interval)

        raise AttestationError(
            f"No proof for {prepared.target.slug} in round {voting_round} "
            f"after {self._settings.proof_poll_attempts} attempts"
        )

    @staticmethod
    def _proof_from_da(data: dict[str, Any]) -> AttestationProof:
        response = data["response"]
        request_body = response.get("requestBody", {})
        try:
            payload = decode_market_dto(response["responseBody"]["abiEncodedData"])
        except (KeyError, ValueError, DecodingError) as exc:
            raise AttestationError(f"Undecodable attested response: {exc}") from exc
        return AttestationProof(
            merkle_proof=tuple(data.get("proof", ())),
            request=AttestationRequest(
                url=request_body.get("url", ""),
                http_method=request_body.get("httpMethod", "GET"),
                post_process_jq=request_body.get("postProcessJq", ""),
                abi_signature=request_body.get("abiSignature", ""),
            ),
            response=payload,
            voting_round=int(response.get("votingRound", 0)),
            source_timestamp=int(response.get("lowestUsedTimestamp", 0)),
        )


class LocalAttestationPipeline(AttestationPipeline):
    """In-process attestor: fetches, transforms and finalizes rounds itself.

    Each submission opens and immediately finalizes a new round whose Merkle
    root covers exactly that response, so proofs verify with a
    MerkleAttestationVerifier over the same registry.

    Args:
        settings: Keeper settings (rounding).
        client: Source of raw market JSON.
        registry: Round roots shared with the oracle's verifier.
        clock: Returns unix seconds for source timestamps.
    """

    def __init__(
        self,
        settings: KeeperSettings | None,
        client: PolymarketClient,
        registry: RoundRootRegistry,
        clock: Callable[[], float] = time.time,
        first_round: int = 1,
    ) -> None:
        super().__init__(settings)
        self._client = client
        self._registry = registry
        self._clock = clock
        self._rounds = itertools.count(first_round)
        self._request_ids = itertools.count(1)
        self._pending: dict[str, tuple[AttestationRequest, MarketPayload]] = {}
        self._proofs: dict[tuple[str, int], AttestationProof] = {}

    async def prepare_request(self, target: MarketTarget) -> PreparedRequest:
        raw = await self._client.fetch_market(target.condition_id)
        payload = to_payload(raw, self._settings.price_rounding_bps, MAX_QUESTION_LENGTH)
        request_id = f"local-{next(self._request_ids)}"
        request = self.build_request(target)
        self._pending[request_id] = (request, payload)
        return PreparedRequest(target=target, request=request, abi_encoded_request=request_id)

    async def submit_request(self, prepared: PreparedRequest) -> int:
        try:
            request, payload = self._pending.pop(prepared.abi_encoded_request)
        except KeyError:
            raise AttestationError(f"Unknown request {prepared.abi_encoded_request}") from None
        voting_round = next(self._rounds)
        unsigned = AttestationProof(
            merkle_proof=(),
            request=request,
            response=payload,
            voting_round=voting_round,
            source_timestamp=int(self._clock()),
        )
        root, paths = build_merkle_tree([leaf_hash(unsigned)])
        self._registry.publish(voting_round, root)
        self._proofs[(prepared.abi_encoded_request, voting_round)] = AttestationProof(
            merkle_proof=paths[0],
            request=request,
            response=payload,
            voting_round=voting_round,
            source_timestamp=unsigned.source_timestamp,
        )
        return voting_round

    async def is_round_finalized(self, voting_round: int) -> bool:
        return self._registry.is_finalized(voting_round)

    async def retrieve_proof(self, prepared: PreparedRequest, voting_round: int) -> AttestationProof:
        proof = self._proofs.pop((prepared.abi_encoded_request, voting_round), None)
        if proof is None:
            raise AttestationError(
                f"No proof for {prepared.target.slug} in round {voting_round}"
            )
        return proof
