"""
Token Math and Secret Store Tests.

============================================================
PURPOSE
============================================================
Fixed-point conversions, entry price derivation and the
scoped secret store.

TEST CATEGORIES:
- Entry price tests: buy/sell symmetry, degenerate fills
- Amount tests: unit conversion, alert formatting
- Secret tests: reveal scope, tamper detection, key parsing

============================================================
"""

import base64
from decimal import Decimal

import pytest

from trade_pipeline.secrets import SecretStore, parse_encryption_key
from trade_pipeline.tokens import (
    USDC,
    WETH,
    get_token,
    to_units,
    realized_entry_price,
    format_amount,
)
from trade_pipeline.types import SecretError


# ============================================================
# ENTRY PRICE TESTS
# ============================================================

class TestRealizedEntryPrice:
    """Price per unit of the non-stable token, in USD."""

    def test_buying_eth(self):
        price = realized_entry_price(USDC.address, WETH.address, 3_000 * 10 ** 6, 10 ** 18)
        assert price == Decimal("3000")

    def test_selling_eth(self):
        price = realized_entry_price(WETH.address, USDC.address, 10 ** 18, 3_000 * 10 ** 6)
        assert price == Decimal("3000")

    def test_buy_and_sell_agree(self):
        buy = realized_entry_price(USDC.address, WETH.address, 1_500 * 10 ** 6, 5 * 10 ** 17)
        sell = realized_entry_price(WETH.address, USDC.address, 5 * 10 ** 17, 1_500 * 10 ** 6)
        assert buy == sell == Decimal("3000")

    def test_case_insensitive_addresses(self):
        price = realized_entry_price(USDC.address.lower(), WETH.address.upper(), 3_000 * 10 ** 6, 10 ** 18)
        assert price == Decimal("3000")

    def test_zero_denominator(self):
        assert realized_entry_price(USDC.address, WETH.address, 10 ** 6, 0) is None


class TestAmounts:
    """Tests for unit conversion and formatting."""

    def test_to_units(self):
        assert to_units(1_500_000, 6) == Decimal("1.5")

    def test_unknown_token_defaults_to_18_decimals(self):
        token = get_token("0x50c5725949A6F0c72E6C4a641F24049A917DB0Cb")
        assert token.decimals == 18
        assert not token.is_stable

    def test_format_amount(self):
        assert format_amount(1_234_567, USDC.address) == "1.23"
        assert format_amount(10 ** 18, WETH.address) == "1.000000"
        assert format_amount(None, WETH.address) == "?"


# ============================================================
# SECRET STORE TESTS
# ============================================================

class TestSecretStore:
    """Tests for SecretStore."""

    def test_reveal_round_trip(self, secret_store):
        ref = secret_store.encrypt("0xdeadbeef")
        with secret_store.reveal(ref) as plaintext:
            assert plaintext.as_text() == "0xdeadbeef"

    def test_ciphertext_format(self, secret_store):
        iv, tag, ciphertext = secret_store.encrypt("hello").split(":")
        assert len(bytes.fromhex(iv)) == 12
        assert len(bytes.fromhex(tag)) == 16
        assert len(bytes.fromhex(ciphertext)) == 5

    def test_encryption_is_randomized(self, secret_store):
        assert secret_store.encrypt("same") != secret_store.encrypt("same")

    def test_plaintext_released_after_block(self, secret_store):
        with secret_store.reveal(secret_store.encrypt("secret")) as plaintext:
            pass
        assert plaintext.released
        with pytest.raises(SecretError):
            plaintext.as_text()

    def test_plaintext_released_on_error(self, secret_store):
        with pytest.raises(RuntimeError):
            with secret_store.reveal(secret_store.encrypt("secret")) as plaintext:
                raise RuntimeError("boom")
        assert plaintext.released

    def test_plaintext_never_in_repr(self, secret_store):
        with secret_store.reveal(secret_store.encrypt("hunter2")) as plaintext:
            assert "hunter2" not in repr(plaintext)
            assert "hunter2" not in str(plaintext)

    def test_json_secret(self, secret_store):
        with secret_store.reveal(secret_store.encrypt('{"apiKey": "k"}')) as plaintext:
            assert plaintext.as_json() == {"apiKey": "k"}

    def test_tampered_ciphertext(self, secret_store):
        iv, tag, ciphertext = secret_store.encrypt("secret").split(":")
        flipped = format(int(ciphertext[:2], 16) ^ 0xFF, "02x") + ciphertext[2:]
        with pytest.raises(SecretError):
            with secret_store.reveal(f"{iv}:{tag}:{flipped}"):
                pass

    def test_wrong_key(self, secret_store):
        other = SecretStore(bytes(32))
        with pytest.raises(SecretError):
            with other.reveal(secret_store.encrypt("secret")):
                pass

    @pytest.mark.parametrize("ref", ["", "abc", "aa:bb", "zz:zz:zz", "aa::bb"])
    def test_malformed_reference(self, secret_store, ref):
        with pytest.raises(SecretError):
            with secret_store.reveal(ref):
                pass


class TestEncryptionKey:
    """Tests for parse_encryption_key."""

    def test_hex_key(self):
        assert parse_encryption_key("ab" * 32) == bytes.fromhex("ab" * 32)

    def test_base64_key(self):
        raw = bytes(range(32))
        assert parse_encryption_key(base64.b64encode(raw).decode()) == raw

    def test_missing_key(self):
        with pytest.raises(SecretError):
            parse_encryption_key(None)

    def test_short_key(self):
        with pytest.raises(SecretError):
            parse_encryption_key(base64.b64encode(b"short").decode())

    def test_garbage_key(self):
        with pytest.raises(SecretError):
            parse_encryption_key("not a key!")
