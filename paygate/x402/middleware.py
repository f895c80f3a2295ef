# paygate/x402/middleware.py
"""
FastAPI middleware that puts priced endpoints behind an on-chain payment.

For each request to a protected endpoint this middleware:
1. Applies the per-IP rate limit
2. Returns 402 Payment Required with payment instructions if no
   X-Payment-Hash header is present
3. Verifies the transaction hash (see verifier.PaymentVerifier)
4. Serves the resource and records the payment before responding, or
   answers from the replay store for a hash that was already redeemed
5. Maps rejections to 400 / 409 and infrastructure failures to 503
"""
import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from paygate.core.config import GateConfig
from paygate.x402 import audit
from paygate.x402.pricing import format_amount
from paygate.x402.ratelimit import RateLimiter, get_rate_limit_headers
from paygate.x402.replay import (
    VERDICT_ACCEPTED,
    VERDICT_REJECTED,
    ReplayRecord,
    ReplayStoreError,
    utc_now,
)
from paygate.x402.verdict import Accepted, InternalError, ReasonCode, Rejected, Verdict
from paygate.x402.verifier import PaymentVerifier, ReplayStore, normalize_reference

logger = logging.getLogger(__name__)

# Endpoints that require payment, matched on method and path prefix
PROTECTED_ENDPOINTS = [
    ("POST", "/api/market-forecast"),
    ("GET", "/api/premium-data"),
]


def is_protected_endpoint(
    method: str,
    path: str,
    endpoints: Optional[List[Tuple[str, str]]] = None
) -> bool:
    """Check if the request matches a protected endpoint."""
    for protected_method, protected_path in endpoints or PROTECTED_ENDPOINTS:
        if method == protected_method and path.rstrip("/").startswith(protected_path.rstrip("/")):
            return True
    return False


def is_same_endpoint(recorded: Optional[str], path: str) -> bool:
    """Check a redeemed payment against the requested path. Records without a path match anything."""
    if not recorded:
        return True
    return recorded.rstrip("/") == path.rstrip("/")


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def build_payment_challenge(config: GateConfig, resource: str) -> Dict[str, Any]:
    """
    Describe how to pay, in enough detail for an automated client.

    Args:
        config: Gateway payment terms
        resource: Path of the protected resource

    Returns:
        JSON-serializable 402 body
    """
    amount = format_amount(config.required_amount, config.asset, config.asset_decimals)
    return {
        "error": "Payment Required",
        "message": "This resource requires payment via blockchain transaction",
        "resource": resource,
        "payTo": config.recipient_address,
        "amount": amount,
        "amountRaw": str(config.required_amount),
        "asset": config.asset,
        "decimals": config.asset_decimals,
        "network": config.network,
        "chainId": config.chain_id,
        "minConfirmations": config.min_confirmations,
        "paymentHeader": config.payment_header,
        "instructions": [
            f"1. Send at least {amount} to {config.recipient_address} on {config.network} (chain id {config.chain_id})",
            f"2. Wait for {config.min_confirmations} confirmation(s)",
            f"3. Include the transaction hash in the {config.payment_header} header",
            "4. Retry this request",
        ],
    }


def create_402_response(config: GateConfig, resource: str) -> JSONResponse:
    """Create an HTTP 402 Payment Required response."""
    return JSONResponse(status_code=402, content=build_payment_challenge(config, resource))


def create_rejection_response(verdict: Rejected) -> JSONResponse:
    """
    Map a rejection to an HTTP response.

    ReplayAttack is a conflict with an earlier use of the hash (409); every
    other rejection is a bad payment proof (400).
    """
    body: Dict[str, Any] = {
        "error": verdict.reason_code.value,
        "detail": verdict.detail,
        "retryable": verdict.is_transient,
    }
    if verdict.reason_code == ReasonCode.REPLAY_ATTACK:
        body["originalUse"] = verdict.first_seen.isoformat() if verdict.first_seen else None
        return JSONResponse(status_code=409, content=body)
    return JSONResponse(status_code=400, content=body)


def create_internal_error_response(detail: str) -> JSONResponse:
    """Infrastructure failure; the same request can be retried unchanged."""
    return JSONResponse(
        status_code=503,
        content={
            "error": "InternalError",
            "detail": detail,
            "message": "Service temporarily unavailable, retry with the same transaction hash",
        },
    )


def accepted_record(
    reference: str,
    verdict: Accepted,
    payload: Any,
    endpoint: Optional[str] = None,
    client_ip: Optional[str] = None,
) -> ReplayRecord:
    """Build the replay record for an accepted payment."""
    return ReplayRecord(
        reference=reference,
        verdict=VERDICT_ACCEPTED,
        created_at=verdict.first_seen or utc_now(),
        payer=verdict.payer,
        response_payload=payload,
        amount=verdict.amount,
        chain_id=verdict.chain_id,
        block_height=verdict.block_height,
        confirmations=verdict.confirmations,
        endpoint=endpoint,
        client_ip=client_ip,
    )


def build_success_body(record: ReplayRecord, config: GateConfig, cached: bool) -> Dict[str, Any]:
    """
    Wrap a served payload with its payment receipt.

    Built only from the stored record, so a retry gets the same body as the
    first request apart from the cached flag.
    """
    return {
        "success": True,
        "verified": True,
        "cached": cached,
        "data": record.response_payload,
        "transaction": {
            "hash": record.reference,
            "from": record.payer,
            "amount": str(record.amount),
            "amountFormatted": format_amount(record.amount, config.asset, config.asset_decimals),
            "chainId": record.chain_id,
            "blockNumber": record.block_height,
            "confirmations": record.confirmations,
        },
        "timestamp": record.created_at.isoformat(),
    }


class ReferenceLocks:
    """
    Per-reference asyncio locks.

    Serializes requests carrying the same transaction hash inside one
    process. Locks are dropped once nobody holds or waits for them.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
            self._users[key] = 0
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


class PaymentGateMiddleware(BaseHTTPMiddleware):
    """
    Payment gate for FastAPI.

    Unprotected endpoints pass through untouched.
    """

    def __init__(
        self,
        app,
        config: GateConfig,
        verifier: PaymentVerifier,
        store: ReplayStore,
        rate_limiter: Optional[RateLimiter] = None,
        protected_endpoints: Optional[List[Tuple[str, str]]] = None,
    ):
        super().__init__(app)
        self.config = config
        self.verifier = verifier
        self.store = store
        self.rate_limiter = rate_limiter
        self.protected_endpoints = protected_endpoints or PROTECTED_ENDPOINTS
        self._locks = ReferenceLocks()

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        """
        Process the request through payment verification.

        Flow:
        1. Skip unprotected endpoints
        2. Rate limit by client IP (429)
        3. No payment header: 402 with payment instructions
        4. Verify the hash while holding its lock
        5. Serve the resource, record the payment, respond
        """
        path = request.url.path
        if not is_protected_endpoint(request.method, path, self.protected_endpoints):
            return await call_next(request)

        client_ip = get_client_ip(request)
        request_id = audit.generate_request_id()
        logger.info(f"x402: Processing protected request from {client_ip}: {request.method} {path}")

        rate_headers: Dict[str, str] = {}
        if self.rate_limiter is not None:
            allowed, stats = self.rate_limiter.hit(client_ip)
            rate_headers = get_rate_limit_headers(stats)
            if not allowed:
                audit.log_rate_limited(client_ip, f"{stats['limit']} requests per {stats['window_seconds']}s", request_id)
                return JSONResponse(
                    status_code=429,
                    content={
                        "error": "Rate limit exceeded",
                        "message": f"Too many requests from this IP. Please try again in {stats['window_seconds']} seconds.",
                        "retryAfter": stats["window_seconds"],
                    },
                    headers=rate_headers,
                )

        response = await self._gate(request, call_next, client_ip, request_id)
        response.headers.update(rate_headers)
        return response

    async def _gate(
        self,
        request: Request,
        call_next: Callable[[Request], Response],
        client_ip: str,
        request_id: str,
    ) -> Response:
        path = request.url.path
        reference = request.headers.get(self.config.payment_header)
        if not reference:
            logger.info(f"x402: No {self.config.payment_header} header, returning 402")
            audit.log_payment_required_sent(
                client_ip=client_ip,
                path=path,
                amount=str(self.config.required_amount),
                network=self.config.network,
                pay_to=self.config.recipient_address,
                request_id=request_id,
            )
            return create_402_response(self.config, path)

        reference = reference.strip()
        audit.log_payment_received(client_ip, reference[:80], path, request_id)

        async with self._locks.hold(normalize_reference(reference)):
            verdict = await run_in_threadpool(
                self.verifier.verify,
                reference,
                self.config.required_amount,
                self.config.recipient_address,
                self.config.chain_id,
                self.config.min_confirmations,
            )
            return await self._respond(request, call_next, reference, verdict, client_ip, request_id)

    async def _respond(
        self,
        request: Request,
        call_next: Callable[[Request], Response],
        reference: str,
        verdict: Verdict,
        client_ip: str,
        request_id: str,
    ) -> Response:
        if isinstance(verdict, InternalError):
            audit.log_error(client_ip, "verification_unavailable", verdict.detail, tx_hash=reference, request_id=request_id)
            return create_internal_error_response(verdict.detail)

        if isinstance(verdict, Rejected):
            return await self._reject(request, reference, verdict, client_ip, request_id)

        reference = normalize_reference(reference)
        if verdict.cached:
            if not is_same_endpoint(verdict.endpoint, request.url.path):
                return self._reject_other_endpoint(reference, verdict.endpoint, verdict.first_seen, client_ip, request_id)
            audit.log_cached_response_served(client_ip, reference, verdict.payer, request_id)
            record = accepted_record(reference, verdict, verdict.cached_response)
            return JSONResponse(status_code=200, content=build_success_body(record, self.config, cached=True))

        return await self._serve_and_record(request, call_next, reference, verdict, client_ip, request_id)

    async def _reject(
        self,
        request: Request,
        reference: str,
        verdict: Rejected,
        client_ip: str,
        request_id: str,
    ) -> Response:
        if verdict.reason_code == ReasonCode.REPLAY_ATTACK:
            original_use = verdict.first_seen.isoformat() if verdict.first_seen else None
            audit.log_replay_detected(client_ip, reference, original_use, request_id)
            return create_rejection_response(verdict)

        recorded = False
        if verdict.is_sticky:
            record = ReplayRecord(
                reference=normalize_reference(reference),
                verdict=VERDICT_REJECTED,
                created_at=utc_now(),
                reason_code=verdict.reason_code.value,
                detail=verdict.detail,
                endpoint=request.url.path,
                client_ip=client_ip,
            )
            try:
                recorded = await run_in_threadpool(self.store.insert_if_absent, record)
            except ReplayStoreError as e:
                # Still a rejection; only the replay marker is lost
                logger.error(f"x402: Failed to record rejection for {reference}: {e}")

        audit.log_payment_rejected(
            client_ip, reference[:80], verdict.reason_code.value, verdict.detail, recorded, request_id
        )
        return create_rejection_response(verdict)

    def _reject_other_endpoint(
        self,
        reference: str,
        endpoint: str,
        first_seen: Optional[datetime],
        client_ip: str,
        request_id: str,
    ) -> Response:
        """A hash redeemed on one priced endpoint cannot unlock another."""
        original_use = first_seen.isoformat() if first_seen else None
        logger.warning(f"x402: {reference} was redeemed for {endpoint}, refusing reuse on another endpoint")
        audit.log_replay_detected(client_ip, reference, original_use, request_id)
        return create_rejection_response(Rejected(
            ReasonCode.REPLAY_ATTACK,
            f"This transaction was already used for {endpoint} at {original_use}",
            first_seen=first_seen,
        ))

    async def _serve_and_record(
        self,
        request: Request,
        call_next: Callable[[Request], Response],
        reference: str,
        verdict: Accepted,
        client_ip: str,
        request_id: str,
    ) -> Response:
        started = time.monotonic()
        audit.log_payment_verified(client_ip, reference, verdict.payer, verdict.amount, verdict.confirmations, request_id)

        response = await call_next(request)
        if not 200 <= response.status_code < 300:
            # Payment stays unspent; the caller can retry with the same hash
            logger.warning(f"x402: Resource {request.url.path} failed with {response.status_code}, payment not recorded")
            return response

        body = b""
        async for chunk in response.body_iterator:
            body += chunk
        try:
            payload = json.loads(body) if body else None
        except ValueError as e:
            audit.log_error(client_ip, "invalid_resource_body", str(e), tx_hash=reference, request_id=request_id)
            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "detail": "Resource returned a non-JSON body"},
            )

        record = accepted_record(reference, verdict, payload, request.url.path, client_ip)
        try:
            created = await run_in_threadpool(self.store.insert_if_absent, record)
            if not created:
                record = await run_in_threadpool(self.store.lookup, reference)
        except ReplayStoreError as e:
            audit.log_error(client_ip, "replay_store_unavailable", str(e), tx_hash=reference, request_id=request_id)
            return create_internal_error_response(f"Could not record payment: {e}")

        if not created:
            # Another request recorded this hash first; serve its answer
            logger.warning(f"x402: Lost race recording {reference}, serving stored result")
            if record is None or not record.is_accepted:
                return create_rejection_response(Rejected(
                    ReasonCode.REPLAY_ATTACK,
                    "This transaction was already used",
                    first_seen=record.created_at if record else None,
                ))
            if not is_same_endpoint(record.endpoint, request.url.path):
                return self._reject_other_endpoint(reference, record.endpoint, record.created_at, client_ip, request_id)
            return JSONResponse(status_code=200, content=build_success_body(record, self.config, cached=True))

        latency_ms = int((time.monotonic() - started) * 1000)
        audit.log_resource_served(client_ip, reference, verdict.payer, request.url.path, latency_ms, request_id)
        logger.info(f"x402: Payment {reference} recorded, served {request.url.path}")
        return JSONResponse(status_code=200, content=build_success_body(record, self.config, cached=False))
