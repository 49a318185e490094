"""Risk, collateral and dispute decisions for peer-to-peer stablecoin trades."""

__version__ = "0.1.0"
