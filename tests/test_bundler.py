import httpx
import pytest

from relay.errors import (
    BundlerUnavailableError,
    InclusionTimeoutError,
    RejectedByBundlerError,
)
from tests.utils.common_classes import TX_HASH
from utils.client import SubmissionHandle
from utils.signer import sign_user_op
from utils.user_op import UserOp


@pytest.fixture
def signed_user_op(account, gas_policy, signer, settings):
    user_op = UserOp(
        sender=account.address,
        init_code=account.init_code,
        call_data="0x12345678",
        **gas_policy.get_values(),
    )
    return sign_user_op(
        user_op,
        signer,
        settings.entry_point_address,
        settings.chain_id,
        settings.validation_module_address,
    )


@pytest.mark.asyncio
async def test_submits_user_op(
    bundler, fake_bundler, signed_user_op, settings
):
    handle = await bundler.submit(signed_user_op)

    expected_hash = signed_user_op.get_hash(
        settings.entry_point_address, settings.chain_id
    )
    assert handle.user_op_hash == "0x" + expected_hash.hex()
    assert handle.entry_point == settings.entry_point_address
    assert handle.submitted_at.tzinfo is not None

    [(rpc_user_op, entry_point)] = fake_bundler.get_calls(
        "eth_sendUserOperation"
    )
    assert rpc_user_op == signed_user_op.to_rpc()
    assert entry_point == settings.entry_point_address


@pytest.mark.asyncio
async def test_not_retries_rejected_user_op(
    bundler, fake_bundler, signed_user_op
):
    fake_bundler.reject = (-32507, "AA24 signature error")

    with pytest.raises(RejectedByBundlerError) as e:
        await bundler.submit(signed_user_op)

    assert e.value.code == -32507
    assert e.value.reason == "AA24 signature error"
    assert len(fake_bundler.get_calls("eth_sendUserOperation")) == 1


@pytest.mark.asyncio
async def test_retries_unavailable_bundler(
    bundler, fake_bundler, signed_user_op
):
    fake_bundler.failures = [
        httpx.Response(503),
        httpx.ConnectError("Connection refused"),
    ]

    handle = await bundler.submit(signed_user_op)

    assert handle.user_op_hash in fake_bundler.received
    assert len(fake_bundler.get_calls("eth_sendUserOperation")) == 3


@pytest.mark.asyncio
async def test_gives_up_on_unavailable_bundler(
    bundler, fake_bundler, signed_user_op, settings
):
    fake_bundler.failures = [httpx.Response(502) for _ in range(10)]

    with pytest.raises(BundlerUnavailableError, match="3 attempt"):
        await bundler.submit(signed_user_op)

    assert (
        len(fake_bundler.get_calls("eth_sendUserOperation"))
        == settings.rpc_max_attempts
    )
    assert not fake_bundler.received


@pytest.mark.asyncio
async def test_not_accepts_invalid_hash(bundler, fake_bundler, signed_user_op):
    fake_bundler.failures = [
        httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0x12"})
    ]

    with pytest.raises(BundlerUnavailableError, match="invalid UserOp hash"):
        await bundler.submit(signed_user_op)


@pytest.mark.asyncio
async def test_awaits_inclusion(bundler, fake_bundler, signed_user_op):
    fake_bundler.empty_receipt_polls = 2
    handle = await bundler.submit(signed_user_op)

    receipt = await bundler.await_inclusion(handle)

    assert receipt.user_op_hash == handle.user_op_hash
    assert receipt.transaction_hash == TX_HASH
    assert receipt.success
    assert receipt.block_number == 100
    assert receipt.actual_gas_used == 21_000
    assert receipt.reason is None
    assert len(fake_bundler.get_calls("eth_getUserOperationReceipt")) == 3


@pytest.mark.asyncio
async def test_awaits_confirmations(bundler, fake_bundler, signed_user_op):
    fake_bundler.mine_on_block_number = True
    handle = await bundler.submit(signed_user_op)

    receipt = await bundler.await_inclusion(handle, confirmations=3)

    assert receipt.block_number == 100
    assert fake_bundler.block_number == 102


@pytest.mark.asyncio
async def test_reports_reverted_user_op(bundler, fake_bundler, signed_user_op):
    fake_bundler.include_success = False
    handle = await bundler.submit(signed_user_op)

    receipt = await bundler.await_inclusion(handle)

    assert not receipt.success


@pytest.mark.asyncio
async def test_times_out_waiting_for_inclusion(
    bundler, fake_bundler, signed_user_op
):
    fake_bundler.include = False
    handle = await bundler.submit(signed_user_op)

    with pytest.raises(InclusionTimeoutError) as e:
        await bundler.await_inclusion(handle, timeout=0.05)

    assert isinstance(e.value, TimeoutError)
    assert e.value.handle == handle
    assert handle.user_op_hash in str(e.value)


@pytest.mark.asyncio
async def test_gets_receipt_by_hash(bundler, fake_bundler, signed_user_op):
    assert await bundler.get_receipt("0x" + "00" * 32) is None

    handle = await bundler.submit(signed_user_op)
    receipt = await bundler.get_receipt(handle.user_op_hash)

    assert receipt.transaction_hash == TX_HASH


@pytest.mark.asyncio
async def test_gets_user_op_by_hash(bundler, signed_user_op, settings):
    handle = await bundler.submit(signed_user_op)

    result = await bundler.get_user_op(handle.user_op_hash)

    assert result["entryPoint"] == settings.entry_point_address
    assert (
        UserOp.from_rpc(result["userOperation"]).model_dump()
        == signed_user_op.model_dump()
    )


@pytest.mark.asyncio
async def test_gets_supported_entry_points(bundler, settings):
    assert await bundler.supported_entry_points() == [
        settings.entry_point_address
    ]


@pytest.mark.asyncio
async def test_awaits_inclusion_of_foreign_handle(bundler, fake_bundler):
    handle = SubmissionHandle(
        user_op_hash="0x" + "00" * 32, entry_point="0x" + "00" * 20
    )

    with pytest.raises(InclusionTimeoutError):
        await bundler.await_inclusion(handle, timeout=0.02)


@pytest.mark.asyncio
async def test_retries_server_error_with_error_body(
    bundler, fake_bundler, signed_user_op
):
    fake_bundler.failures = [
        httpx.Response(503, json={"error": "Service Unavailable"}),
        httpx.Response(
            502,
            json={
                "jsonrpc": "2.0",
                "id": 1,
                "error": {"code": -32603, "message": "Bad gateway"},
            },
        ),
    ]

    handle = await bundler.submit(signed_user_op)

    assert handle.user_op_hash in fake_bundler.received
    assert len(fake_bundler.get_calls("eth_sendUserOperation")) == 3
