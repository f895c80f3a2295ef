"""Pay-per-call gateway that releases resources against on-chain payments."""

__version__ = "0.1.0"
