"""Tests for request signing."""

import base58
import pytest
from nacl.signing import VerifyKey

from copytrader.common.exceptions import AuthError
from copytrader.exchange.signing import AgentSigner, canonical_json, is_valid_private_key

ACCOUNT = "AccountPubKey111111111111111111111111111111"


class TestCanonicalJson:
    """Deterministic message text."""

    def test_keys_sorted_at_every_depth(self):
        message = {"type": "x", "data": {"symbol": "BTC", "amount": "1"}, "expiry_window": 5000}
        assert canonical_json(message) == (
            '{"data":{"amount":"1","symbol":"BTC"},"expiry_window":5000,"type":"x"}'
        )

    def test_no_whitespace(self):
        assert " " not in canonical_json({"a": [1, 2, {"c": 3, "b": 2}]})


class TestPrivateKeyValidation:
    """Accepted key encodings."""

    def test_keypair_and_seed(self, private_key_b58):
        assert is_valid_private_key(private_key_b58)
        seed = base58.b58decode(private_key_b58)[:32]
        assert is_valid_private_key(base58.b58encode(seed).decode())

    def test_rejects_garbage(self):
        assert not is_valid_private_key("")
        assert not is_valid_private_key("0OIl")
        assert not is_valid_private_key(base58.b58encode(b"short").decode())


class TestAgentSigner:
    """Ed25519 signatures over the canonical message."""

    def test_agent_public_key_from_keypair_or_seed(self, private_key_b58, signing_key):
        seed_b58 = base58.b58encode(base58.b58decode(private_key_b58)[:32]).decode()
        expected = base58.b58encode(bytes(signing_key.verify_key)).decode()

        assert AgentSigner(ACCOUNT, private_key_b58).agent_public_key == expected
        assert AgentSigner(ACCOUNT, seed_b58).agent_public_key == expected

    def test_build_request_signature_verifies(self, private_key_b58):
        signer = AgentSigner(ACCOUNT, private_key_b58)
        data = {"symbol": "BTC", "amount": "0.001", "side": "bid",
                "slippage_percent": "0.5", "reduce_only": False}

        body = signer.build_request("create_market_order", data, expiry_window=5000, timestamp=1700000000000)

        assert body["account"] == ACCOUNT
        assert body["agent_wallet"] == signer.agent_public_key
        assert body["timestamp"] == 1700000000000
        assert body["expiry_window"] == 5000
        assert body["symbol"] == "BTC"
        assert "type" not in body

        signed_text = canonical_json({
            "timestamp": 1700000000000,
            "expiry_window": 5000,
            "type": "create_market_order",
            "data": data,
        }).encode("utf-8")
        verify_key = VerifyKey(base58.b58decode(signer.agent_public_key))
        verify_key.verify(signed_text, base58.b58decode(body["signature"]))

    def test_signature_is_deterministic(self, private_key_b58):
        signer = AgentSigner(ACCOUNT, private_key_b58)
        assert signer.sign({"b": 1, "a": 2}) == signer.sign({"a": 2, "b": 1})

    def test_invalid_key_raises(self):
        with pytest.raises(AuthError):
            AgentSigner(ACCOUNT, "not-a-key")

    def test_missing_account_raises(self, private_key_b58):
        with pytest.raises(AuthError):
            AgentSigner("", private_key_b58)
