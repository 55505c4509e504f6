"""Off-chain keeper and oracle price feeder for the DEX router contracts."""

__version__ = "0.1.0"
