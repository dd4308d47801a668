"""
Backend IVS: decryption-request correlation for the Infection Vulnerability Score contract.

Submits decryption requests to an FHE-enabled contract, correlates the relayer's
DecryptionCompleted events back to the originating request, and renders the
decrypted value as a bounded score and risk tier.
"""

__version__ = "0.1.0"
