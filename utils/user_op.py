from typing import Annotated

import eth_abi
from pydantic import BaseModel, BeforeValidator, ConfigDict

import utils.web3
from relay.errors import SignedOperationError
from utils.validation import validate_address, validate_bytes, validate_uint256

Address = Annotated[str, BeforeValidator(validate_address)]
Uint256 = Annotated[int, BeforeValidator(validate_uint256)]
Bytes = Annotated[bytes, BeforeValidator(validate_bytes)]

GAS_FIELDS = (
    "call_gas_limit",
    "verification_gas_limit",
    "pre_verification_gas",
    "max_fee_per_gas",
    "max_priority_fee_per_gas",
)

SIGNED_FIELDS = (
    "sender",
    "nonce",
    "init_code",
    "call_data",
    *GAS_FIELDS,
    "paymaster_and_data",
)

RPC_FIELD_NAMES = {
    "sender": "sender",
    "nonce": "nonce",
    "init_code": "initCode",
    "call_data": "callData",
    "call_gas_limit": "callGasLimit",
    "verification_gas_limit": "verificationGasLimit",
    "pre_verification_gas": "preVerificationGas",
    "max_fee_per_gas": "maxFeePerGas",
    "max_priority_fee_per_gas": "maxPriorityFeePerGas",
    "paymaster_and_data": "paymasterAndData",
    "signature": "signature",
}


class UserOp(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    sender: Address
    nonce: Uint256 = 0
    init_code: Bytes = b""
    call_data: Bytes = b""
    call_gas_limit: Uint256 = 0
    verification_gas_limit: Uint256 = 0
    pre_verification_gas: Uint256 = 0
    max_fee_per_gas: Uint256 = 0
    max_priority_fee_per_gas: Uint256 = 0
    paymaster_and_data: Bytes = b""
    signature: Bytes = b""

    def __setattr__(self, name, value):
        if name in SIGNED_FIELDS and self.signature:
            raise SignedOperationError(
                f"'{name}' can't be changed once the UserOp is signed, "
                "use unsigned() to get an editable copy."
            )
        super().__setattr__(name, value)

    def get_calldata_gas(self) -> int:
        calldata_bytes = self.encode()
        zero_bytes_count = calldata_bytes.count(0)

        return 4 * zero_bytes_count + 16 * (
            len(calldata_bytes) - zero_bytes_count
        )

    def get_required_prefund(self, with_paymaster=False) -> int:
        return self.max_fee_per_gas * (
            self.pre_verification_gas
            + self.verification_gas_limit * (3 if with_paymaster else 1)
            + self.call_gas_limit
        )

    def encode(self, with_signature=True) -> bytes:
        types = [
            "address",  # sender
            "uint256",  # nonce
            "bytes",  # init_code
            "bytes",  # call_data
            "uint256",  # call_gas_limit
            "uint256",  # verification_gas_limit
            "uint256",  # pre_verification_gas
            "uint256",  # max_fee_per_gas
            "uint256",  # max_priority_fee_per_gas
            "bytes",  # paymaster_and_data
        ]
        values = [getattr(self, field) for field in SIGNED_FIELDS]

        if with_signature:
            types.append("bytes")
            values.append(self.signature)

        return eth_abi.encode(types, values)

    def pack(self) -> bytes:
        keccak = utils.web3.keccak
        return eth_abi.encode(
            [
                "address",
                "uint256",
                "bytes32",
                "bytes32",
                "uint256",
                "uint256",
                "uint256",
                "uint256",
                "uint256",
                "bytes32",
            ],
            [
                self.sender,
                self.nonce,
                keccak(self.init_code),
                keccak(self.call_data),
                self.call_gas_limit,
                self.verification_gas_limit,
                self.pre_verification_gas,
                self.max_fee_per_gas,
                self.max_priority_fee_per_gas,
                keccak(self.paymaster_and_data),
            ],
        )

    def get_hash(self, entry_point: str, chain_id: int) -> bytes:
        return utils.web3.keccak(
            eth_abi.encode(
                ["bytes32", "address", "uint256"],
                [
                    utils.web3.keccak(self.pack()),
                    utils.web3.to_checksum_address(entry_point),
                    chain_id,
                ],
            )
        )

    def unsigned(self, **changes) -> "UserOp":
        data = self.model_dump()
        data.update(changes, signature=b"")
        return type(self)(**data)

    def with_signature(self, signature: bytes) -> "UserOp":
        data = self.model_dump()
        data["signature"] = signature
        return type(self)(**data)

    def model_copy(self, *, update=None, deep=False) -> "UserOp":
        if self.signature and update and set(update) & set(SIGNED_FIELDS):
            raise SignedOperationError(
                "Signed fields can't be updated on a signed UserOp, use "
                "unsigned() to get an editable copy."
            )
        return super().model_copy(update=update, deep=deep)

    def to_rpc(self) -> dict:
        return {
            rpc_name: self._to_hex(getattr(self, field))
            for field, rpc_name in RPC_FIELD_NAMES.items()
        }

    @classmethod
    def from_rpc(cls, data: dict) -> "UserOp":
        return cls(
            **{
                field: data[rpc_name]
                for field, rpc_name in RPC_FIELD_NAMES.items()
                if rpc_name in data
            }
        )

    @classmethod
    def _to_hex(cls, v) -> str:
        if isinstance(v, str):
            return v
        if isinstance(v, int):
            return hex(v)
        if isinstance(v, bytes):
            return "0x" + v.hex()
