"""
Kaspa address format checks.

Checks run in a fixed order — prefix, network, character set, length —
and stop at the first failure so the message names the real problem.
No checksum verification is done; that needs the bech32 decoder the
node ships with.
"""

from __future__ import annotations

import re
from typing import Any

NETWORK_PREFIXES: dict[str, str] = {
    "mainnet": "kaspa",
    "testnet": "kaspatest",
    "testnet-10": "kaspatest",
    "testnet-11": "kaspatest",
    "devnet": "kaspadev",
    "simnet": "kaspasim",
}

_PREFIX_NETWORK: dict[str, str] = {
    "kaspa": "mainnet",
    "kaspatest": "testnet",
    "kaspadev": "devnet",
    "kaspasim": "simnet",
}

_ADDRESS_RE = re.compile(r"^(kaspa|kaspatest|kaspadev|kaspasim):[qpzry9x8gf2tvdw0s3jn54khce6mua7l]{58,}$")

MIN_LENGTH = 64
MAX_LENGTH = 90


def detect_network(address: str) -> str | None:
    """Return the network an address belongs to, or None if the prefix is unknown."""
    prefix, sep, _ = (address or "").strip().lower().partition(":")
    if not sep:
        return None
    return _PREFIX_NETWORK.get(prefix)


def validate_address(address: str | None, network: str | None = None) -> dict[str, Any]:
    """Validate a Kaspa address, optionally against an expected network.

    Returns:
        ``{"valid": True, "network": ...}`` or
        ``{"valid": False, "type": ..., "error": ...}``.
    """
    if not address or not str(address).strip():
        return {"valid": False, "type": "required", "error": "Address is required"}

    addr = str(address).strip().lower()

    detected = detect_network(addr)
    if detected is None:
        return {
            "valid": False,
            "type": "invalid_prefix",
            "error": "Address must start with kaspa:, kaspatest:, kaspadev: or kaspasim:",
        }

    if network:
        expected = NETWORK_PREFIXES.get(network)
        if expected and not addr.startswith(expected + ":"):
            return {
                "valid": False,
                "type": "network_mismatch",
                "error": f"Address is for {detected}, but the selected network is {network}",
                "expected_prefix": expected,
            }

    if not _ADDRESS_RE.match(addr):
        return {
            "valid": False,
            "type": "invalid_format",
            "error": "Address contains invalid characters or is too short",
        }

    if not MIN_LENGTH <= len(addr) <= MAX_LENGTH:
        return {
            "valid": False,
            "type": "invalid_length",
            "error": f"Address length must be between {MIN_LENGTH} and {MAX_LENGTH} characters",
        }

    return {"valid": True, "network": detected, "address": addr}
