"""Cross-chain relay of InvoiceBatch events via the Polymer proof API."""

from .config import RelayConfig
from .relayer import InvoiceRelayer

__all__ = ["InvoiceRelayer", "RelayConfig"]

__version__ = "0.1.0"
