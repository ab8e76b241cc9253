"""nutmelt - melt Cashu ecash tokens into Lightning payments.

Multi-mint melt quote negotiation and execution.
"""

from .lnurl import InvoiceProvider, LNURLInvoiceProvider
from .melt import Melter
from .token import decode, encode

__all__ = [
    # Main entry point
    "Melter",
    # Invoice providers
    "InvoiceProvider",
    "LNURLInvoiceProvider",
    # Token codec
    "decode",
    "encode",
]
