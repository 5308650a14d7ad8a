"""Authentication building blocks: nonces and signatures."""

from exchangekit.auth.nonce import NonceProvider, NonceStyle
from exchangekit.auth.signing import HmacSigner, Signer, canonical_query

__all__ = ["NonceProvider", "NonceStyle", "HmacSigner", "Signer", "canonical_query"]
