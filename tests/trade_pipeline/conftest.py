"""
Trade Pipeline Test Fixtures.

============================================================
PURPOSE
============================================================
Shared fixtures: a file-backed SQLite store per test, a
test configuration, an encrypted agent wallet and an
on-chain venue whose network clients are mocks.

============================================================
"""

import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from eth_account import Account

from database import create_database_engine, create_all_tables, get_session_factory, get_db_session

import trade_pipeline.models  # noqa: F401
from trade_pipeline.config import PipelineConfig
from trade_pipeline.repository import (
    TradeQueueRepository,
    AgentRepository,
    ExchangeKeyRepository,
    ConsultationRepository,
)
from trade_pipeline.secrets import SecretStore
from trade_pipeline.signing import OrderSigner
from trade_pipeline.tokens import USDC, WETH
from trade_pipeline.types import Agent, ExchangeKey, TradeRequest, TradeStatus
from trade_pipeline.venues import OnChainVenue


TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"

SELL_USDC = 1_000 * 10 ** 6
QUOTED_WETH = 333_333_333_333_333_333


# ============================================================
# STORE
# ============================================================

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_database_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    await create_all_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with get_db_session(session_factory) as session:
        yield session


# ============================================================
# CONFIGURATION / SECRETS
# ============================================================

@pytest.fixture
def config():
    return PipelineConfig.for_testing()


@pytest.fixture
def secret_store(config):
    return SecretStore.from_config(config.secrets)


@pytest.fixture
def private_key():
    return TEST_PRIVATE_KEY


@pytest.fixture
def wallet(private_key):
    return Account.from_key(private_key)


# ============================================================
# RECORDS
# ============================================================

@pytest.fixture
def agent(wallet, secret_store):
    return Agent(
        id="agent-1",
        account_id="account-1",
        name="Momentum Alpha",
        agent_wallet_address=wallet.address,
        encrypted_private_key=secret_store.encrypt(TEST_PRIVATE_KEY),
        max_drawdown_pct=Decimal("15"),
        pnl_pct=Decimal("-3"),
    )


@pytest.fixture
def snapshot_for(config):
    """Builds the quote snapshot the on-chain venue would persist."""
    def build(owner: str, sell_amount: int = SELL_USDC, buy_amount: int = QUOTED_WETH):
        return {
            "sellToken": USDC.address,
            "buyToken": WETH.address,
            "sellAmount": str(sell_amount),
            "buyAmount": str(buy_amount),
            "feeAmount": "0",
            "quoteFeeAmount": "0",
            "validTo": 1_900_000_000,
            "appData": config.onchain.app_data,
            "kind": "sell",
            "receiver": owner,
            "from": owner,
            "partiallyFillable": False,
            "sellTokenBalance": "erc20",
            "buyTokenBalance": "erc20",
        }
    return build


@pytest.fixture
def make_trade(agent):
    def build(status: TradeStatus = TradeStatus.QUEUED, **kwargs) -> TradeRequest:
        values = dict(
            agent_id=agent.id,
            account_id=agent.account_id,
            sell_token=USDC.address,
            buy_token=WETH.address,
            sell_amount=SELL_USDC,
            status=status,
        )
        values.update(kwargs)
        return TradeRequest(**values)
    return build


@pytest_asyncio.fixture
async def seed(session):
    """Persists agents, trades, keys and consultations."""
    class Seeder:
        async def agent(self, agent: Agent) -> Agent:
            return await AgentRepository(session).create(agent)

        async def trade(self, trade: TradeRequest) -> TradeRequest:
            return await TradeQueueRepository(session).create(trade)

        async def exchange_key(self, store: SecretStore, key_id: str, exchange: str = "binance") -> ExchangeKey:
            key = ExchangeKey(
                id=key_id,
                account_id="account-1",
                exchange=exchange,
                encrypted_data=store.encrypt(json.dumps({"apiKey": "api-key-1", "secret": "api-secret-1"})),
            )
            return await ExchangeKeyRepository(session).create(key)

        async def consultation(self, consultation):
            return await ConsultationRepository(session).create(consultation)

    return Seeder()


# ============================================================
# VENUES
# ============================================================

@pytest.fixture
def cow_client():
    client = AsyncMock()
    client.quote.return_value = {
        "sellToken": USDC.address,
        "buyToken": WETH.address,
        "sellAmount": str(SELL_USDC),
        "buyAmount": str(QUOTED_WETH),
        "feeAmount": "1500000",
        "validTo": 1_900_000_000,
        "kind": "sell",
    }
    client.submit_order.return_value = "0x" + "ab" * 56
    client.get_order.return_value = {"status": "open"}
    return client


@pytest.fixture
def allowance():
    manager = AsyncMock()
    manager.ensure_allowance.return_value = None
    return manager


@pytest.fixture
def onchain_venue(config, cow_client, allowance, secret_store):
    return OnChainVenue(
        client=cow_client,
        signer=OrderSigner(config.onchain),
        allowance=allowance,
        secrets=secret_store,
        app_data=config.onchain.app_data,
    )
