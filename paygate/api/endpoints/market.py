# paygate/api/endpoints/market.py
from fastapi import APIRouter
import logging

from paygate.services.market import (
    generate_market_forecast,
    generate_market_sentiment,
    get_premium_data,
)
from paygate.api.models.market import MarketForecast, MarketSentiment, PremiumData

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/market-sentiment", response_model=MarketSentiment)
async def market_sentiment() -> MarketSentiment:
    """
    Free ETH market sentiment snapshot.
    """
    return MarketSentiment(**generate_market_sentiment())


@router.post("/market-forecast", response_model=MarketForecast)
async def market_forecast() -> MarketForecast:
    """
    Multi-asset price forecast.

    Priced: the payment gate only lets requests through once their
    X-Payment-Hash has been verified, and wraps this payload with the
    payment receipt.
    """
    forecast = generate_market_forecast()
    logger.info(f"Market forecast generated for {len(forecast['forecasts'])} assets")
    return MarketForecast(**forecast)


@router.get("/premium-data", response_model=PremiumData)
async def premium_data() -> PremiumData:
    """
    Premium secret. Priced, see market_forecast.
    """
    return PremiumData(**get_premium_data())
