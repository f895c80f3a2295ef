# paygate/api/endpoints/transactions.py
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
import logging

from paygate.core.config import GateConfig
from paygate.x402.pricing import format_amount
from paygate.x402.replay import ReplayStoreError
from paygate.api.models.transactions import (
    GatewayMetrics,
    MetricsResponse,
    TransactionRecord,
    TransactionsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _config(request: Request) -> GateConfig:
    return request.app.state.gate_config


@router.get("/transactions", response_model=TransactionsResponse)
async def list_transactions(
    request: Request,
    agent_address: Optional[str] = Query(None, description="Only payments from this address."),
    limit: int = Query(100, ge=1, le=500),
) -> TransactionsResponse:
    """
    Most recent recorded payments, newest first.

    Raises:
        HTTPException: 500 if the replay store cannot be read
    """
    store = request.app.state.replay_store
    try:
        records = store.list_records(payer=agent_address, limit=limit)
    except ReplayStoreError as e:
        logger.error(f"Transaction fetch error: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch transactions")

    transactions = [TransactionRecord(**record.to_dict()) for record in records]
    return TransactionsResponse(transactions=transactions, count=len(transactions))


@router.get("/metrics", response_model=MetricsResponse)
async def metrics(request: Request) -> MetricsResponse:
    """
    Aggregate payment metrics for the dashboard.

    Raises:
        HTTPException: 500 if the replay store cannot be read
    """
    store = request.app.state.replay_store
    config = _config(request)
    try:
        stats = store.stats()
    except ReplayStoreError as e:
        logger.error(f"Metrics fetch error: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch metrics")

    return MetricsResponse(metrics=GatewayMetrics(
        total_records=stats["total_records"],
        accepted=stats["accepted"],
        rejected=stats["rejected"],
        unique_payers=stats["unique_payers"],
        total_volume=str(stats["total_volume"]),
        total_volume_formatted=format_amount(stats["total_volume"], config.asset, config.asset_decimals),
    ))
