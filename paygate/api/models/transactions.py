# paygate/api/models/transactions.py
from pydantic import BaseModel, Field
from typing import List, Optional


class TransactionRecord(BaseModel):
    """
    A payment as recorded by the replay store.
    """
    tx_hash: str = Field(..., description="Transaction hash (lower case).")
    status: str = Field(..., description="'accepted' or 'rejected'.")
    agent_address: Optional[str] = Field(None, description="Payer address (accepted payments only).")
    amount: Optional[str] = Field(None, description="Amount in the asset's smallest unit, as a string.")
    chain_id: Optional[int] = None
    block_number: Optional[int] = None
    confirmations: Optional[int] = None
    reason_code: Optional[str] = Field(None, description="Rejection reason (rejected payments only).")
    detail: Optional[str] = None
    service_endpoint: Optional[str] = None
    client_ip: Optional[str] = None
    created_at: str


class TransactionsResponse(BaseModel):
    success: bool = True
    transactions: List[TransactionRecord]
    count: int


class GatewayMetrics(BaseModel):
    """
    Aggregate figures for the operator dashboard.
    """
    total_records: int
    accepted: int
    rejected: int
    unique_payers: int
    total_volume: str = Field(..., description="Accepted volume in the smallest unit, as a string.")
    total_volume_formatted: str


class MetricsResponse(BaseModel):
    success: bool = True
    metrics: GatewayMetrics
