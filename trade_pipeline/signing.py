"""
Trade Pipeline - Order Signer.

============================================================
PURPOSE
============================================================
EIP-712 signatures over GPv2 orders.

The order struct is rebuilt from the immutable quote
snapshot so the signed bytes match what the venue priced.

============================================================
"""

import logging
from typing import Any, Dict

from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from .config import OnChainConfig
from .types import Authorization, SigningError


logger = logging.getLogger(__name__)

ZERO_APP_DATA = "0x" + "00" * 32

ORDER_TYPES = {
    "Order": [
        {"name": "sellToken", "type": "address"},
        {"name": "buyToken", "type": "address"},
        {"name": "receiver", "type": "address"},
        {"name": "sellAmount", "type": "uint256"},
        {"name": "buyAmount", "type": "uint256"},
        {"name": "validTo", "type": "uint32"},
        {"name": "appData", "type": "bytes32"},
        {"name": "feeAmount", "type": "uint256"},
        {"name": "kind", "type": "string"},
        {"name": "partiallyFillable", "type": "bool"},
        {"name": "sellTokenBalance", "type": "string"},
        {"name": "buyTokenBalance", "type": "string"},
    ],
}


def build_domain(config: OnChainConfig) -> Dict[str, Any]:
    return {
        "name": "Gnosis Protocol",
        "version": "v2",
        "chainId": config.chain_id,
        "verifyingContract": config.settlement_contract,
    }


def build_order(snapshot: Dict[str, Any]) -> Dict[str, Any]:
    """
    Canonical order struct from a quote snapshot.

    Raises:
        SigningError if a required field is missing
    """
    try:
        receiver = snapshot.get("receiver") or snapshot["from"]
        return {
            "sellToken": Web3.to_checksum_address(snapshot["sellToken"]),
            "buyToken": Web3.to_checksum_address(snapshot["buyToken"]),
            "receiver": Web3.to_checksum_address(receiver),
            "sellAmount": int(snapshot["sellAmount"]),
            "buyAmount": int(snapshot["buyAmount"]),
            "validTo": int(snapshot["validTo"]),
            "appData": snapshot.get("appData") or ZERO_APP_DATA,
            "feeAmount": int(snapshot.get("feeAmount") or 0),
            "kind": snapshot.get("kind") or "sell",
            "partiallyFillable": bool(snapshot.get("partiallyFillable", False)),
            "sellTokenBalance": snapshot.get("sellTokenBalance") or "erc20",
            "buyTokenBalance": snapshot.get("buyTokenBalance") or "erc20",
        }
    except (KeyError, TypeError, ValueError) as e:
        raise SigningError(f"Quote snapshot cannot form an order: {e}") from e


class OrderSigner:
    """Typed-data signer for the batch-auction venue."""

    def __init__(self, config: OnChainConfig):
        self._domain = build_domain(config)

    def typed_message(self, snapshot: Dict[str, Any]):
        """SignableMessage for a snapshot."""
        return encode_typed_data(
            domain_data=self._domain,
            message_types=ORDER_TYPES,
            message_data=build_order(snapshot),
        )

    def sign(self, private_key: str, snapshot: Dict[str, Any]) -> Authorization:
        """
        Sign the order described by snapshot.

        Args:
            private_key: Revealed key; used for this call only
            snapshot: Immutable quote snapshot
        """
        message = self.typed_message(snapshot)
        try:
            signed = Account.sign_message(message, private_key=private_key)
            owner = Account.from_key(private_key).address
        except (ValueError, TypeError) as e:
            raise SigningError(f"Typed-data signing failed: {type(e).__name__}") from None

        return Authorization(
            scheme="eip712",
            signature=Web3.to_hex(signed.signature),
            owner=owner,
        )
