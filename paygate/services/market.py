# paygate/services/market.py
"""Simulated market data behind the priced and free endpoints."""
import random
from datetime import datetime, timezone
from typing import Any, Dict

FORECAST_SYMBOLS = ["BTC", "ETH", "SOL", "BASE"]
SENTIMENTS = ["Bullish", "Bearish", "Neutral"]
VOLATILITIES = ["Low", "Medium", "High"]
RECOMMENDATIONS = ["Strong Buy", "Buy", "Hold", "Sell"]

ETH_BASE_PRICE = 3450.20

PREMIUM_SECRET = {
    "secret": "The Agent Economy is Live!",
    "premiumInsight": "Autonomous AI agents are revolutionizing blockchain payments",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_market_forecast() -> Dict[str, Any]:
    """
    Produce a simulated 24h / 7d price forecast for a fixed set of assets.

    Not a model; values are random and labelled as such in the disclaimer.
    """
    forecasts = [
        {
            "symbol": symbol,
            "current_price": round(random.uniform(0, 10000), 2),
            "predicted_price_24h": round(random.uniform(0, 10000), 2),
            "predicted_price_7d": round(random.uniform(0, 10000), 2),
            "confidence": f"{random.uniform(70, 100):.1f}%",
            "sentiment": random.choice(SENTIMENTS),
            "recommendation": random.choice(RECOMMENDATIONS),
        }
        for symbol in FORECAST_SYMBOLS
    ]

    return {
        "service": "MicroGate AI Market Forecast",
        "model_version": "v2.4.1",
        "generated_at": _now(),
        "forecasts": forecasts,
        "disclaimer": "This is a simulated forecast for demonstration purposes. Not financial advice.",
        "data_sources": ["CoinGecko", "CoinMarketCap", "DEX Aggregators"],
    }


def generate_market_sentiment() -> Dict[str, Any]:
    """ETH price around a fixed base (+/- $100) with a random sentiment."""
    price = ETH_BASE_PRICE + random.uniform(-100, 100)
    return {
        "asset": "ETH",
        "price": round(price, 2),
        "sentiment": random.choice(SENTIMENTS),
        "volatility": random.choice(VOLATILITIES),
        "timestamp": _now(),
        "source": "MicroGate Market Analytics",
    }


def get_premium_data() -> Dict[str, Any]:
    return {**PREMIUM_SECRET, "verified": True}
