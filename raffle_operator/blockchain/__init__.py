"""web3 access for on-chain payouts."""
