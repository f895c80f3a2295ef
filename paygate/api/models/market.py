# paygate/api/models/market.py
from pydantic import BaseModel, Field
from typing import List


class AssetForecast(BaseModel):
    """
    Forecast for a single asset.
    """
    symbol: str
    current_price: float
    predicted_price_24h: float
    predicted_price_7d: float
    confidence: str = Field(..., description="Confidence as a percentage string, e.g. '87.3%'.")
    sentiment: str
    recommendation: str


class MarketForecast(BaseModel):
    """
    Priced forecast payload. Served inside the payment envelope built by the gate.
    """
    service: str
    model_version: str
    generated_at: str
    forecasts: List[AssetForecast]
    disclaimer: str
    data_sources: List[str]


class MarketSentiment(BaseModel):
    """
    Response model for the free sentiment endpoint.
    """
    asset: str
    price: float
    sentiment: str
    volatility: str
    timestamp: str
    source: str


class PremiumData(BaseModel):
    secret: str
    premiumInsight: str
    verified: bool
