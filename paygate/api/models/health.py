# paygate/api/models/health.py
from pydantic import BaseModel
from typing import List


class HealthResponse(BaseModel):
    """
    Response model for the gateway health endpoint, including the payment terms.
    """
    status: str
    service: str
    version: str
    timestamp: str
    network: str
    chainId: int
    seller_wallet: str
    min_payment: str
    min_confirmations: int
    features: List[str]
