"""Raffle operator: verifiable-randomness raffle rounds with automated upkeep."""

__version__ = "1.0.0"
