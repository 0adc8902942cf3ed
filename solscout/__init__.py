"""Multi-source Solana token detection and filtering engine."""

from .validation import is_valid_identifier

__all__ = ["is_valid_identifier", "__version__"]

__version__ = "0.1.0"
