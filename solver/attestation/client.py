"""Storage-proof attestation API client (async)."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any, Union

import httpx
from pydantic import ValidationError

from solver.attestation.models import (
    AttestationQuery,
    ProofResult,
    QueryStatus,
    QueryStatusResponse,
    SubmitResponse,
)
from solver.core.errors import (
    AttestationQueryFailed,
    AttestationStatusError,
    AttestationSubmissionError,
    AttestationTimeout,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.herodotus.cloud"
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_MAX_WAIT = 3600.0


def _response_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


class AttestationClient:
    """Async client for the batch storage-proof query service.

    Usage::

        async with AttestationClient(api_key="...") as client:
            query_id = await client.submit_batch_query(120, contract, slots)
            proof = await client.await_completion(query_id, poll_interval=5, max_wait=600)
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "X-API-KEY": api_key,
                "Accept": "application/json",
                "User-Agent": "xchain-solver/0.1.0",
            },
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    # ── Context manager ──────────────────────────────────────────────

    async def __aenter__(self) -> AttestationClient:
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    # ── Queries ──────────────────────────────────────────────────────

    async def submit_batch_query(
        self,
        block_reference: Union[int, str],
        address: str,
        slots: Iterable[str],
    ) -> str:
        """Submit one batch query and return the service's query id.

        Raises:
            AttestationSubmissionError: transport failure, non-2xx response
                (upstream body attached) or a response without ``query_id``.
        """
        query = AttestationQuery(block_reference=block_reference, address=address, slots=list(slots))
        return await self.submit(query)

    async def submit(self, query: AttestationQuery) -> str:
        body = query.to_request().model_dump()
        ctx = {"block_number": query.block_reference, "address": query.address}
        try:
            resp = await self._client.post("/submit-batch-query", json=body)
        except httpx.HTTPError as exc:
            raise AttestationSubmissionError(
                f"attestation submission failed: {exc}", step="submit_query", context=ctx
            ) from exc

        if not resp.is_success:
            upstream = _response_body(resp)
            raise AttestationSubmissionError(
                f"attestation service rejected query (HTTP {resp.status_code}): {upstream}",
                status_code=resp.status_code,
                body=upstream,
                step="submit_query",
                context=ctx,
            )

        try:
            submitted = SubmitResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            raise AttestationSubmissionError(
                f"attestation response has no query_id: {resp.text[:200]}",
                status_code=resp.status_code,
                body=resp.text,
                step="submit_query",
                context=ctx,
            ) from exc

        query.query_id = submitted.query_id
        logger.info(
            "Submitted attestation query %s for %d slots at block %s",
            submitted.query_id, len(query.slots), query.block_reference,
            extra={"query_id": submitted.query_id, "block_number": query.block_reference},
        )
        return submitted.query_id

    async def poll_query_status(self, query_id: str) -> QueryStatusResponse:
        """Fetch the current status of ``query_id`` once."""
        ctx = {"query_id": query_id}
        try:
            resp = await self._client.get(f"/get-query-status/{query_id}")
        except httpx.HTTPError as exc:
            raise AttestationStatusError(
                f"status request for {query_id} failed: {exc}", step="await_proof", context=ctx
            ) from exc

        if not resp.is_success:
            upstream = _response_body(resp)
            raise AttestationStatusError(
                f"status request for {query_id} returned HTTP {resp.status_code}: {upstream}",
                status_code=resp.status_code,
                body=upstream,
                step="await_proof",
                context=ctx,
            )

        try:
            return QueryStatusResponse.from_payload(resp.json())
        except (TypeError, ValueError, ValidationError) as exc:
            raise AttestationStatusError(
                f"unreadable status payload for {query_id}: {resp.text[:200]}",
                status_code=resp.status_code,
                body=resp.text,
                step="await_proof",
                context=ctx,
            ) from exc

    async def await_completion(
        self,
        query_id: str,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_wait: float = DEFAULT_MAX_WAIT,
    ) -> ProofResult:
        """Poll ``query_id`` until DONE, sleeping ``poll_interval`` between polls.

        Each poll is bounded by the time left, so this never runs past
        ``max_wait``. Cancelling the awaiting task stops polling immediately.

        Raises:
            AttestationQueryFailed: the service reports FAILED.
            AttestationTimeout: ``max_wait`` elapsed; re-poll the same id to resume.
        """
        if poll_interval <= 0 or max_wait <= 0:
            raise ValueError("poll_interval and max_wait must be positive")

        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + max_wait
        polls = 0
        last_status: str | None = None

        def _timeout() -> AttestationTimeout:
            waited = loop.time() - started
            return AttestationTimeout(
                f"query {query_id} not DONE after {waited:.1f}s ({polls} polls)",
                query_id=query_id,
                waited=waited,
                step="await_proof",
            )

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise _timeout()
            try:
                status = await asyncio.wait_for(self.poll_query_status(query_id), timeout=remaining)
            except asyncio.TimeoutError as exc:
                raise _timeout() from exc
            polls += 1

            if status.raw_status != last_status:
                logger.info(
                    "Attestation query %s is %s", query_id, status.raw_status or status.status.value,
                    extra={"query_id": query_id},
                )
                last_status = status.raw_status

            if status.status is QueryStatus.DONE:
                return ProofResult(
                    query_id=query_id,
                    result=status.result,
                    polls=polls,
                    waited_seconds=loop.time() - started,
                )
            if status.status is QueryStatus.FAILED:
                raise AttestationQueryFailed(
                    f"attestation query {query_id} failed",
                    query_id=query_id,
                    payload=status.model_dump(),
                    step="await_proof",
                )

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise _timeout()
            await asyncio.sleep(min(poll_interval, remaining))
