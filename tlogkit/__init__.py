"""Entry IDs, log ranges, signing, attestation storage and entry types for a transparency log."""

__version__ = "0.1.0"