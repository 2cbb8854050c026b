"""Coordinator for loans collateralized by NFTs held in a lending contract."""

__version__ = "1.0.0"
