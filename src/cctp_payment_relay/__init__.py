"""Cross-chain payment relay for Circle CCTP transfers."""

__version__ = "0.1.0"

__all__ = ["__version__"]
