"""
Request signing for Pacifica trading endpoints.

Every write operation signs ``{timestamp, expiry_window, type, data}``:
keys sorted at every depth, compact JSON, UTF-8, Ed25519, base58.
"""

import json
from typing import Any, Dict, Optional

import base58
from nacl.signing import SigningKey

from ..common.exceptions import AuthError
from ..common.types import JSONDict
from ..common.utils import get_timestamp_ms


def canonical_json(message: Any) -> str:
    """Serialize with recursively sorted keys and no whitespace."""
    return json.dumps(message, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def is_valid_private_key(value: str) -> bool:
    """Check that a string is a base58 Solana keypair (64 bytes) or seed (32 bytes)."""
    if not value or not isinstance(value, str):
        return False
    try:
        decoded = base58.b58decode(value.strip())
    except ValueError:
        return False
    return len(decoded) in (32, 64)


class AgentSigner:
    """
    Ed25519 signer for one trading account.

    The key may belong to an agent wallet approved for ``account``; the
    derived public key travels as ``agent_wallet`` next to the signature.
    """

    def __init__(self, account: str, private_key_b58: str):
        if not account:
            raise AuthError("Account public key required for signing")
        if not is_valid_private_key(private_key_b58):
            raise AuthError(
                "Invalid private key: expected base58 keypair",
                context={"account": account},
            )

        secret = base58.b58decode(private_key_b58.strip())
        self.account = account
        # Solana keypairs are seed || public key
        self._signing_key = SigningKey(secret[:32])
        self.agent_public_key = base58.b58encode(bytes(self._signing_key.verify_key)).decode("ascii")

    def sign(self, message: JSONDict) -> str:
        """Sign a message and return the base58 signature."""
        payload = canonical_json(message).encode("utf-8")
        signed = self._signing_key.sign(payload)
        return base58.b58encode(signed.signature).decode("ascii")

    def build_request(
        self,
        operation: str,
        data: Dict[str, Any],
        expiry_window: int,
        timestamp: Optional[int] = None,
    ) -> JSONDict:
        """
        Build the signed body for a write operation.

        Args:
            operation: Operation type (e.g. ``create_market_order``)
            data: Operation fields, signed and sent at the top level
            expiry_window: Validity window in milliseconds
            timestamp: Milliseconds since epoch, defaults to now

        Returns:
            Request body ready to POST
        """
        if timestamp is None:
            timestamp = get_timestamp_ms()

        signature = self.sign({
            "timestamp": timestamp,
            "expiry_window": expiry_window,
            "type": operation,
            "data": data,
        })

        return {
            "account": self.account,
            "agent_wallet": self.agent_public_key,
            "signature": signature,
            "timestamp": timestamp,
            "expiry_window": expiry_window,
            **data,
        }
