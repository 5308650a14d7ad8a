"""exchangekit - unified order book streaming and authenticated REST dispatch for crypto exchanges."""

__version__ = "0.1.0"
