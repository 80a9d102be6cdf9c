"""Raffle core: ledger, upkeep, randomness, settlement and automation."""
