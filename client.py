import asyncio
import json
import logging
from decimal import Decimal
from typing import Optional

import typer
from httpx import AsyncClient
from web3 import Web3

import db.service
import db.utils
import relay.constants as constants
import utils.web3
from db.base import async_session, engine
from relay.config import settings
from relay.main import OperationSubmissionPipeline
from utils.account import SmartAccountResolver
from utils.builder import Call, GasPolicy
from utils.client import BundlerClient, PaymasterClient, SponsorshipMode
from utils.signer import KeySigner
from utils.web3 import ChainRpc

cli = typer.Typer()

PRIVATE_KEY_OPTION = typer.Option(
    ..., envvar="PRIVATE_KEY", help="Private key of the smart account owner"
)


@cli.callback()
def main(verbose: bool = typer.Option(False, help="Enable debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command(help="Print the counterfactual smart account address")
def address(
    private_key: str = PRIVATE_KEY_OPTION,
    check_deployment: bool = typer.Option(
        False, help="Ask the chain whether the account is deployed"
    ),
):
    asyncio.run(_address(private_key, check_deployment))


async def _address(private_key, check_deployment):
    signer = KeySigner(private_key)
    resolver = SmartAccountResolver(settings)
    account = resolver.resolve(
        signer.address,
        settings.validation_module_address,
        settings.entry_point_address,
        settings.chain_id,
    )
    print("EOA Owner Address:", signer.address)
    print("Smart Account Address:", account.address)

    if check_deployment:
        chain = ChainRpc.from_uri(settings.rpc_endpoint_uri)
        account = await resolver.refresh_deployment(account, chain)
        print("Deployed:", account.deployed)
        print("Matches the factory:", await resolver.verify(account, chain))


@cli.command(help="Send a call from the smart account")
def send(
    to: str = typer.Argument(..., help="The call target address"),
    data: str = typer.Option("0x", help="Calldata for the target"),
    value: str = typer.Option("0", help="Value to send, in ether"),
    mode: SponsorshipMode = typer.Option(
        SponsorshipMode.NONE, help="Paymaster sponsorship mode"
    ),
    fee_token: Optional[str] = typer.Option(
        None, help="Fee token address for the ERC20 sponsorship mode"
    ),
    call_gas_limit: Optional[int] = typer.Option(None),
    verification_gas_limit: Optional[int] = typer.Option(None),
    pre_verification_gas: Optional[int] = typer.Option(None),
    max_fee_per_gas: Optional[int] = typer.Option(None),
    max_priority_fee_per_gas: Optional[int] = typer.Option(None),
    confirmations: Optional[int] = typer.Option(
        None, help="Blocks to wait for after inclusion"
    ),
    timeout: Optional[float] = typer.Option(
        None, help="Seconds to wait for the inclusion"
    ),
    private_key: str = PRIVATE_KEY_OPTION,
):
    call = Call(to=to, data=data, value=Web3.to_wei(Decimal(value), "ether"))
    gas_policy = GasPolicy(
        call_gas_limit=call_gas_limit,
        verification_gas_limit=verification_gas_limit,
        pre_verification_gas=pre_verification_gas,
        max_fee_per_gas=max_fee_per_gas,
        max_priority_fee_per_gas=max_priority_fee_per_gas,
    )
    submission = asyncio.run(
        _submit(
            private_key,
            [call],
            mode,
            gas_policy,
            fee_token,
            confirmations,
            timeout,
        )
    )
    _print_submission(submission)


@cli.command(help="Mint an NFT to the smart account with safeMint(address)")
def mint(
    nft_address: str = typer.Argument(..., help="The NFT contract address"),
    mode: SponsorshipMode = typer.Option(
        SponsorshipMode.SPONSORED, help="Paymaster sponsorship mode"
    ),
    fee_token: Optional[str] = typer.Option(
        None, help="Fee token address for the ERC20 sponsorship mode"
    ),
    timeout: Optional[float] = typer.Option(
        None, help="Seconds to wait for the inclusion"
    ),
    private_key: str = PRIVATE_KEY_OPTION,
):
    signer = KeySigner(private_key)
    account = SmartAccountResolver(settings).resolve(
        signer.address,
        settings.validation_module_address,
        settings.entry_point_address,
        settings.chain_id,
    )
    call = Call(
        to=nft_address,
        data=utils.web3.encode_function_call(
            constants.SAFE_MINT_SIGNATURE, [account.address]
        ),
    )
    submission = asyncio.run(
        _submit(private_key, [call], mode, None, fee_token, None, timeout)
    )
    _print_submission(submission)


@cli.command(help="Get a UserOp receipt by its hash")
def receipt(hash_: str = typer.Argument(..., help="Hash of the UserOp")):
    print(asyncio.run(_receipt(hash_)))


async def _receipt(hash_):
    async with AsyncClient(timeout=settings.rpc_timeout) as client:
        user_op_receipt = await BundlerClient(client, settings).get_receipt(
            hash_
        )

    if user_op_receipt is None:
        return None
    async with async_session() as session:
        await db.service.update_receipt(session, user_op_receipt)
        await session.commit()
    return user_op_receipt.model_dump_json(indent=2)


@cli.command(help="Get a UserOp by its hash")
def get_user_op(hash_: str = typer.Argument(..., help="Hash of the UserOp")):
    print(asyncio.run(_get_user_op(hash_)))


async def _get_user_op(hash_):
    async with AsyncClient(timeout=settings.rpc_timeout) as client:
        return await BundlerClient(client, settings).get_user_op(hash_)


@cli.command(help="Get a list of entry points supported by the bundler")
def supported_entry_points():
    print(asyncio.run(_supported_entry_points()))


async def _supported_entry_points():
    async with AsyncClient(timeout=settings.rpc_timeout) as client:
        return await BundlerClient(client, settings).supported_entry_points()


@cli.command(help="List submitted UserOps that have no receipt yet")
def pending():
    for submission in asyncio.run(_get_submissions(None)):
        print(json.dumps(submission.serialize(), indent=2))


@cli.command(help="List the last submitted UserOps")
def history(count: int = typer.Option(10, help="How many to list")):
    for submission in asyncio.run(_get_submissions(count)):
        print(json.dumps(submission.serialize(), indent=2))


async def _get_submissions(count):
    await db.utils.init_models(engine)
    async with async_session() as session:
        if count is None:
            return await db.service.get_pending_submissions(session)
        return await db.service.get_last_submissions(session, count)


async def _submit(
    private_key,
    calls,
    mode,
    gas_policy,
    fee_token,
    confirmations,
    timeout,
):
    await db.utils.init_models(engine)
    async with AsyncClient(timeout=settings.rpc_timeout) as client:
        pipeline = _get_pipeline(client, KeySigner(private_key))
        return await pipeline.run(
            calls,
            mode=mode,
            gas_policy=gas_policy,
            fee_token=fee_token,
            confirmations=confirmations,
            timeout=timeout,
        )


def _get_pipeline(client: AsyncClient, signer: KeySigner):
    return OperationSubmissionPipeline(
        settings,
        signer,
        ChainRpc.from_uri(settings.rpc_endpoint_uri, settings.rpc_timeout),
        BundlerClient(client, settings),
        paymaster=(
            PaymasterClient(client, settings)
            if settings.paymaster_url
            else None
        ),
        session_factory=async_session,
    )


def _print_submission(submission):
    if submission.user_op is not None:
        print("Smart Account Address:", submission.user_op.sender)
    if submission.handle is not None:
        print("UserOp Hash:", submission.handle.user_op_hash)

    if submission.receipt is not None:
        print("Transaction Hash:", submission.receipt.transaction_hash)
        print("Success:", submission.receipt.success)

    if submission.failure is not None:
        print(
            f"Failed in the '{submission.failure.state.value}' state: "
            f"{submission.failure.cause}"
        )
        raise typer.Exit(code=1)


if __name__ == "__main__":
    cli()
