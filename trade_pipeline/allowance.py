"""
Trade Pipeline - Allowance Manager.

============================================================
PURPOSE
============================================================
Ensures the venue's vault relayer may move the agent's
sell token before an order is signed.

FLOW:
1. eth_call allowance(owner, relayer)
2. If short: approve(relayer, MAX_UINT256), wait for one
   confirmation (the only blocking wait in the pipeline)
3. Re-read; still short is an insufficient-funds failure

============================================================
"""

import asyncio
import logging
from typing import Optional

import aiohttp
from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import Web3Exception

from .config import OnChainConfig
from .types import AllowanceError, InsufficientAllowanceError


logger = logging.getLogger(__name__)

MAX_UINT256 = 2 ** 256 - 1

ERC20_ABI = [
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

RPC_ERRORS = (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError, ValueError)


class AllowanceManager:
    """ERC-20 allowance reads and approvals through AsyncWeb3."""

    def __init__(self, config: OnChainConfig, w3: Optional[AsyncWeb3] = None):
        self._config = config
        self._w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            config.rpc_url,
            request_kwargs={"timeout": config.request_timeout_seconds},
        ))
        self._spender = Web3.to_checksum_address(config.vault_relayer)

    def _contract(self, token: str):
        return self._w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)

    async def get_allowance(self, token: str, owner: str) -> int:
        """Current allowance granted by owner to the relayer."""
        try:
            return int(await self._contract(token).functions.allowance(
                Web3.to_checksum_address(owner), self._spender
            ).call())
        except RPC_ERRORS as e:
            raise AllowanceError(f"Allowance read failed for {token}: {e}") from e

    async def ensure_allowance(
        self,
        private_key: str,
        owner: str,
        token: str,
        required: int,
    ) -> Optional[str]:
        """
        Approve the relayer if the allowance is short.

        Args:
            private_key: Revealed key of owner; not retained
            owner: Agent routing address
            token: Sell token
            required: Amount the order will pull

        Returns:
            Approval tx hash, or None if no approval was needed

        Raises:
            AllowanceError: approval reverted or RPC unreachable
            InsufficientAllowanceError: still short after approval
        """
        current = await self.get_allowance(token, owner)
        if current >= required:
            return None

        logger.info(
            f"Allowance insufficient for {owner} on {token} "
            f"({current} < {required}), sending approval"
        )
        tx_hash = await self._approve(private_key, owner, token)
        logger.info(f"Approval confirmed: {tx_hash}")

        after = await self.get_allowance(token, owner)
        if after < required:
            raise InsufficientAllowanceError(
                f"Allowance still insufficient after approval {tx_hash} ({after} < {required})"
            )
        return tx_hash

    async def _approve(self, private_key: str, owner: str, token: str) -> str:
        """Send approve(relayer, MAX_UINT256) and wait for one confirmation."""
        owner = Web3.to_checksum_address(owner)
        try:
            nonce = await self._w3.eth.get_transaction_count(owner)
            tx = await self._contract(token).functions.approve(
                self._spender, MAX_UINT256
            ).build_transaction({
                "from": owner,
                "nonce": nonce,
                "gas": self._config.approval_gas_limit,
                "chainId": self._config.chain_id,
            })
            signed = Account.sign_transaction(tx, private_key)
            tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=self._config.approval_timeout_seconds,
            )
        except RPC_ERRORS as e:
            raise AllowanceError(f"Approval failed for {token}: {e}") from e

        if receipt.get("status") != 1:
            raise AllowanceError(f"Approval reverted: {Web3.to_hex(tx_hash)}")
        return Web3.to_hex(tx_hash)
