from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import db.utils
from relay.config import Settings
from relay.main import OperationSubmissionPipeline
from tests.utils.common_classes import (
    FakeBundler,
    FakeChain,
    FakePaymaster,
    get_transport,
)
from utils.account import SmartAccountResolver
from utils.builder import GasPolicy
from utils.client import BundlerClient, PaymasterClient
from utils.signer import KeySigner

OWNER_PRIVATE_KEY = "0x" + "11" * 32
OTHER_PRIVATE_KEY = "0x" + "22" * 32
CHAIN_ID = 80001


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        chain_id=CHAIN_ID,
        rpc_endpoint_uri="http://chain.test",
        bundler_url="http://bundler.test",
        paymaster_url="http://paymaster.test",
        rpc_max_attempts=3,
        rpc_backoff_base=0.001,
        rpc_backoff_max=0.005,
        receipt_poll_interval=0.001,
        receipt_poll_max_interval=0.005,
        inclusion_timeout=2.0,
        db_url="sqlite+aiosqlite://",
    )


@pytest.fixture
def signer() -> KeySigner:
    return KeySigner(OWNER_PRIVATE_KEY)


@pytest.fixture
def other_signer() -> KeySigner:
    return KeySigner(OTHER_PRIVATE_KEY)


@pytest.fixture
def resolver(settings) -> SmartAccountResolver:
    return SmartAccountResolver(settings)


@pytest.fixture
def account(resolver, settings, signer):
    return resolver.resolve(
        signer.address,
        settings.validation_module_address,
        settings.entry_point_address,
        settings.chain_id,
    )


@pytest.fixture
def gas_policy() -> GasPolicy:
    return GasPolicy(
        call_gas_limit=200_000,
        verification_gas_limit=500_000,
        pre_verification_gas=100_000,
        max_fee_per_gas=3 * 10**9,
        max_priority_fee_per_gas=10**9,
    )


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def fake_bundler(settings) -> FakeBundler:
    return FakeBundler(settings.entry_point_address, settings.chain_id)


@pytest.fixture
def fake_paymaster() -> FakePaymaster:
    return FakePaymaster()


@pytest_asyncio.fixture
async def http_client(
    fake_bundler, fake_paymaster
) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=get_transport(fake_bundler, fake_paymaster)
    ) as client:
        yield client


@pytest.fixture
def bundler(http_client, settings) -> BundlerClient:
    return BundlerClient(http_client, settings)


@pytest.fixture
def paymaster(http_client, settings) -> PaymasterClient:
    return PaymasterClient(http_client, settings)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await db.utils.init_models(engine)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def pipeline(
    settings, signer, chain, bundler, paymaster, resolver, session_factory
) -> OperationSubmissionPipeline:
    return OperationSubmissionPipeline(
        settings,
        signer,
        chain,
        bundler,
        paymaster=paymaster,
        resolver=resolver,
        session_factory=session_factory,
    )
