import httpx
import pytest

import utils.web3
from relay.errors import SponsorshipDeniedError, SponsorshipServiceError
from tests.utils.common_classes import FakePaymaster
from utils.client import SponsorshipMode
from utils.user_op import UserOp

FEE_TOKEN = "0x" + "fe" * 20


@pytest.fixture
def user_op(account, gas_policy):
    return UserOp(
        sender=account.address,
        init_code=account.init_code,
        call_data="0x12345678",
        **gas_policy.get_values(),
    )


@pytest.mark.asyncio
async def test_sponsors_user_op(paymaster, fake_paymaster, user_op):
    sponsored = await paymaster.sponsor(user_op, SponsorshipMode.SPONSORED)

    assert sponsored.paymaster_and_data == bytes.fromhex(
        FakePaymaster.paymaster_and_data[2:]
    )
    assert sponsored.call_gas_limit == 150_000
    assert sponsored.verification_gas_limit == 400_000
    assert sponsored.pre_verification_gas == 120_000
    assert sponsored.max_fee_per_gas == user_op.max_fee_per_gas
    assert sponsored.nonce == user_op.nonce
    assert sponsored.signature == b""
    assert user_op.paymaster_and_data == b""

    [(rpc_user_op, context)] = fake_paymaster.get_calls(
        "pm_sponsorUserOperation"
    )
    assert rpc_user_op == user_op.to_rpc()
    assert context["mode"] == "SPONSORED"
    assert context["calculateGasLimits"] is True
    assert "sponsorshipInfo" in context


@pytest.mark.asyncio
async def test_keeps_gas_values_not_returned(
    paymaster, fake_paymaster, user_op
):
    fake_paymaster.response = {
        "paymasterAndData": FakePaymaster.paymaster_and_data
    }

    sponsored = await paymaster.sponsor(user_op, SponsorshipMode.SPONSORED)

    assert sponsored.call_gas_limit == user_op.call_gas_limit
    assert sponsored.pre_verification_gas == user_op.pre_verification_gas


@pytest.mark.asyncio
async def test_sponsors_with_erc20_token(paymaster, fake_paymaster, user_op):
    await paymaster.sponsor(user_op, SponsorshipMode.ERC20, FEE_TOKEN)

    [(_, context)] = fake_paymaster.get_calls("pm_sponsorUserOperation")
    assert context["mode"] == "ERC20"
    assert context["tokenInfo"] == {
        "feeTokenAddress": utils.web3.to_checksum_address(FEE_TOKEN)
    }


@pytest.mark.asyncio
async def test_not_sponsors_erc20_without_token(
    paymaster, fake_paymaster, user_op
):
    with pytest.raises(SponsorshipDeniedError, match="fee token"):
        await paymaster.sponsor(user_op, SponsorshipMode.ERC20)

    assert not fake_paymaster.requests


@pytest.mark.asyncio
async def test_skips_paymaster_without_sponsorship(
    paymaster, fake_paymaster, user_op
):
    assert await paymaster.sponsor(user_op, SponsorshipMode.NONE) is user_op
    assert not fake_paymaster.requests


@pytest.mark.asyncio
async def test_sends_signed_user_op_unsigned(
    paymaster, fake_paymaster, user_op
):
    signed = user_op.with_signature(b"\x01" * 65)

    sponsored = await paymaster.sponsor(signed, SponsorshipMode.SPONSORED)

    [(rpc_user_op, _)] = fake_paymaster.get_calls("pm_sponsorUserOperation")
    assert rpc_user_op["signature"] == "0x"
    assert sponsored.signature == b""


@pytest.mark.asyncio
async def test_reports_denied_sponsorship(paymaster, fake_paymaster, user_op):
    fake_paymaster.deny = (-32000, "Policy limit reached")

    with pytest.raises(SponsorshipDeniedError, match="Policy limit") as e:
        await paymaster.sponsor(user_op, SponsorshipMode.SPONSORED)

    assert e.value.code == -32000
    assert len(fake_paymaster.requests) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        None,
        [],
        {"paymasterAndData": "0x"},
        {"paymasterAndData": "0x" + "99" * 20, "callGasLimit": "-1"},
    ],
)
async def test_not_accepts_invalid_sponsorship(
    paymaster, fake_paymaster, user_op, response
):
    fake_paymaster.failures = [
        httpx.Response(
            200, json={"jsonrpc": "2.0", "id": 1, "result": response}
        )
    ]

    with pytest.raises(SponsorshipServiceError):
        await paymaster.sponsor(user_op, SponsorshipMode.SPONSORED)


@pytest.mark.asyncio
async def test_reports_unavailable_paymaster(
    paymaster, fake_paymaster, user_op, settings
):
    fake_paymaster.failures = [
        httpx.Response(500) for _ in range(settings.rpc_max_attempts)
    ]

    with pytest.raises(SponsorshipServiceError) as e:
        await paymaster.sponsor(user_op, SponsorshipMode.SPONSORED)

    assert e.value.retryable
    assert len(fake_paymaster.requests) == settings.rpc_max_attempts


@pytest.mark.asyncio
async def test_not_denies_on_server_error_with_error_body(
    paymaster, fake_paymaster, user_op, settings
):
    fake_paymaster.failures = [
        httpx.Response(
            502,
            json={
                "jsonrpc": "2.0",
                "id": 1,
                "error": {"code": -32000, "message": "Bad gateway"},
            },
        )
        for _ in range(settings.rpc_max_attempts)
    ]

    with pytest.raises(SponsorshipServiceError, match="HTTP 502"):
        await paymaster.sponsor(user_op, SponsorshipMode.SPONSORED)

    assert len(fake_paymaster.requests) == settings.rpc_max_attempts


@pytest.mark.asyncio
async def test_not_accepts_insufficient_pre_verification_gas(
    paymaster, fake_paymaster, user_op
):
    fake_paymaster.response = {
        "paymasterAndData": FakePaymaster.paymaster_and_data,
        "preVerificationGas": "0x1",
    }

    with pytest.raises(SponsorshipServiceError, match="pre_verification_gas"):
        await paymaster.sponsor(user_op, SponsorshipMode.SPONSORED)
