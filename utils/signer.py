import eth_abi
from eth_account import Account as EthAccount
from eth_account.messages import encode_defunct

import relay.constants as constants
import utils.web3
from utils.user_op import UserOp


class KeySigner:
    """Holds an owner key and signs EIP-191 messages with it.

    The key itself is never exposed, only the owner address and the
    signatures produced with it.
    """

    def __init__(self, private_key):
        self.__account = EthAccount.from_key(private_key)

    def __repr__(self):
        return f"KeySigner(address={self.address})"

    @property
    def address(self) -> str:
        return self.__account.address

    def sign_bytes(self, payload: bytes) -> bytes:
        signed = self.__account.sign_message(encode_defunct(primitive=payload))
        return bytes(signed.signature)


def wrap_module_signature(signature: bytes, module_address: str) -> bytes:
    return eth_abi.encode(
        ["bytes", "address"],
        [signature, utils.web3.to_checksum_address(module_address)],
    )


def unwrap_module_signature(signature: bytes) -> tuple[bytes, str]:
    module_signature, module_address = eth_abi.decode(
        ["bytes", "address"], signature
    )
    return module_signature, utils.web3.to_checksum_address(module_address)


def dummy_signature(module_address: str) -> bytes:
    return wrap_module_signature(
        constants.DUMMY_ECDSA_SIGNATURE, module_address
    )


def sign_user_op(
    user_op: UserOp,
    signer: KeySigner,
    entry_point: str,
    chain_id: int,
    module_address: str = constants.DEFAULT_ECDSA_OWNERSHIP_MODULE,
) -> UserOp:
    user_op_hash = user_op.get_hash(entry_point, chain_id)
    return user_op.with_signature(
        wrap_module_signature(signer.sign_bytes(user_op_hash), module_address)
    )


def recover_signer(user_op: UserOp, entry_point: str, chain_id: int) -> str:
    module_signature, _ = unwrap_module_signature(user_op.signature)
    return EthAccount.recover_message(
        encode_defunct(primitive=user_op.get_hash(entry_point, chain_id)),
        signature=module_signature,
    )


def verify_user_op(
    user_op: UserOp, owner_address: str, entry_point: str, chain_id: int
) -> bool:
    if not user_op.signature:
        return False

    try:
        recovered = recover_signer(user_op, entry_point, chain_id)
    except Exception:
        return False
    return recovered.lower() == owner_address.lower()
