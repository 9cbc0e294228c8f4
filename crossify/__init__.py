"""Cross-chain bonding-curve pricing and state synchronization."""
