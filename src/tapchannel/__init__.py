"""py-tapchannel: custodial Taproot payment channel engine."""

__version__ = "0.1.0"
