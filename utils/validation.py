import re

import relay.constants as constants
import utils.web3
from relay.errors import GasEstimationError, InvalidCallError


def validate_hex(v):
    if not (isinstance(v, str) and re.fullmatch(r"0x[0-9a-fA-F]*", v)):
        raise ValueError("Not a hex value.")

    return v


def validate_address(v) -> str:
    if isinstance(v, bytes):
        v = "0x" + v.hex()
    v = validate_hex(v)
    if not utils.web3.is_address(v):
        raise ValueError("Must be an Ethereum address.")

    return utils.web3.to_checksum_address(v)


def validate_uint256(v) -> int:
    if isinstance(v, str):
        validate_hex(v)
        v = 0 if v == "0x" else int(v, 16)
    if isinstance(v, bool) or not isinstance(v, int):
        raise ValueError("Not an integer value.")
    if not 0 <= v <= constants.UINT256_MAX:
        raise ValueError("Must be in range [0, 2**256).")

    return v


def validate_bytes(v) -> bytes:
    if isinstance(v, (bytes, bytearray)):
        return bytes(v)

    validate_hex(v)
    if len(v) % 2:
        raise ValueError("Incorrect bytes string.")
    return bytes.fromhex(v[2:])


def validate_call(call) -> None:
    if not (isinstance(call.to, str) and utils.web3.is_address(call.to)):
        raise InvalidCallError(
            f"'{call.to}' is not a well-formed address for the call target."
        )
    if call.value < 0:
        raise InvalidCallError("The call value must not be negative.")


def validate_gas_fields(user_op) -> None:
    if user_op.pre_verification_gas < user_op.get_calldata_gas():
        raise GasEstimationError(
            "'pre_verification_gas' value is insufficient to cover the gas "
            "cost of serializing UserOp to calldata."
        )

    if user_op.max_fee_per_gas < user_op.max_priority_fee_per_gas:
        raise GasEstimationError(
            "'max_fee_per_gas' is less than 'max_priority_fee_per_gas'."
        )
