"""lendcore - collateralized lending core settled on an XRPL-style ledger."""

__version__ = "0.1.0"
