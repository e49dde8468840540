import logging
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict

import relay.constants as constants
import utils.web3
from relay.errors import (
    GasEstimationError,
    InvalidCallError,
    RejectedByBundlerError,
    UnresolvedAccountError,
)
from utils.signer import dummy_signature
from utils.user_op import GAS_FIELDS, Bytes, Uint256, UserOp
from utils.validation import validate_call, validate_gas_fields

logger = logging.getLogger(__name__)

FEE_FIELDS = ("max_fee_per_gas", "max_priority_fee_per_gas")

BUNDLER_ESTIMATION_FIELDS = {
    "call_gas_limit": ("callGasLimit",),
    "verification_gas_limit": ("verificationGasLimit", "verificationGas"),
    "pre_verification_gas": ("preVerificationGas",),
}


class Call(BaseModel):
    model_config = ConfigDict(frozen=True)

    to: str
    data: Bytes = b""
    value: int = 0


class GasPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    call_gas_limit: Optional[Uint256] = None
    verification_gas_limit: Optional[Uint256] = None
    pre_verification_gas: Optional[Uint256] = None
    max_fee_per_gas: Optional[Uint256] = None
    max_priority_fee_per_gas: Optional[Uint256] = None

    def get_missing_fields(self) -> list[str]:
        return [field for field in GAS_FIELDS if getattr(self, field) is None]

    def get_values(self) -> dict:
        return {
            field: getattr(self, field)
            for field in GAS_FIELDS
            if getattr(self, field) is not None
        }


def encode_call_data(calls: list[Call]) -> bytes:
    if len(calls) == 1:
        call = calls[0]
        return utils.web3.encode_function_call(
            constants.EXECUTE_SIGNATURE,
            [utils.web3.to_checksum_address(call.to), call.value, call.data],
        )

    return utils.web3.encode_function_call(
        constants.EXECUTE_BATCH_SIGNATURE,
        [
            [utils.web3.to_checksum_address(call.to) for call in calls],
            [call.value for call in calls],
            [call.data for call in calls],
        ],
    )


class GasEstimator:
    """Fills gas limits from the bundler and fees from the chain."""

    def __init__(self, bundler, chain, module_address: str):
        self.bundler = bundler
        self.chain = chain
        self.module_address = module_address

    async def estimate(self, user_op: UserOp, fields: list[str]) -> dict:
        estimated = {}
        if any(field in FEE_FIELDS for field in fields):
            (
                estimated["max_fee_per_gas"],
                estimated["max_priority_fee_per_gas"],
            ) = await self.chain.get_fees()

        if any(field in BUNDLER_ESTIMATION_FIELDS for field in fields):
            draft = user_op.unsigned(**estimated).with_signature(
                dummy_signature(self.module_address)
            )
            try:
                result = await self.bundler.estimate_user_op_gas(draft)
            except RejectedByBundlerError as e:
                raise GasEstimationError(
                    f"The bundler could not estimate the UserOp gas: "
                    f"{e.reason}"
                ) from e

            for field, rpc_names in BUNDLER_ESTIMATION_FIELDS.items():
                for rpc_name in rpc_names:
                    if result.get(rpc_name) is not None:
                        estimated[field] = result[rpc_name]
                        break

        missing = [field for field in fields if field not in estimated]
        if missing:
            raise GasEstimationError(
                f"The gas estimation did not return {', '.join(missing)}."
            )
        return {field: estimated[field] for field in fields}


class UserOperationBuilder:
    def __init__(self, nonces, estimator: Optional[GasEstimator] = None):
        self.nonces = nonces
        self.estimator = estimator

    async def build(
        self,
        account,
        calls: Iterable[Call],
        gas_policy: Optional[GasPolicy] = None,
    ) -> UserOp:
        if account is None:
            raise UnresolvedAccountError(
                "The smart account must be resolved before building a UserOp."
            )

        calls = list(calls)
        if not calls:
            raise InvalidCallError("At least one call is required.")
        for call in calls:
            validate_call(call)

        gas_policy = gas_policy or GasPolicy()
        missing = gas_policy.get_missing_fields()
        if missing and self.estimator is None:
            raise GasEstimationError(
                "No gas estimator is configured and the gas policy does not "
                f"set {', '.join(missing)}."
            )

        call_data = encode_call_data(calls)
        nonce = await self.nonces.reserve(account)
        try:
            user_op = UserOp(
                sender=account.address,
                nonce=nonce,
                init_code=b"" if account.deployed else account.init_code,
                call_data=call_data,
                **gas_policy.get_values(),
            )
            if missing:
                user_op = user_op.unsigned(
                    **await self.estimator.estimate(user_op, missing)
                )
            validate_gas_fields(user_op)
        except BaseException:
            await self.nonces.release(account, nonce)
            raise

        logger.info(
            "Built UserOp for %s with nonce %d (%d call(s), deploying: %s)",
            account.address,
            nonce,
            len(calls),
            not account.deployed,
        )
        return user_op
