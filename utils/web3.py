import re

import eth_abi
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

import relay.constants as constants


def is_address(s) -> bool:
    return isinstance(s, str) and bool(
        re.match(r"^(0x)[0-9a-f]{40}$", s, flags=re.IGNORECASE)
    )


def to_checksum_address(address) -> str:
    if isinstance(address, bytes):
        address = "0x" + address.hex()
    return Web3.to_checksum_address(address)


def get_selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature)[:4])


def get_argument_types(signature: str) -> list[str]:
    arguments = signature[signature.index("(") + 1 : signature.rindex(")")]
    return arguments.split(",") if arguments else []


def encode_function_call(signature: str, args: list) -> bytes:
    return get_selector(signature) + eth_abi.encode(
        get_argument_types(signature), args
    )


def keccak(data: bytes) -> bytes:
    return bytes(Web3.keccak(data))


class ChainRpc:
    def __init__(self, w3: AsyncWeb3):
        self.w3 = w3

    @classmethod
    def from_uri(cls, uri: str, timeout: float = 30.0) -> "ChainRpc":
        provider = AsyncHTTPProvider(uri, request_kwargs={"timeout": timeout})
        return cls(AsyncWeb3(provider))

    async def get_code(self, address: str) -> bytes:
        return bytes(await self.w3.eth.get_code(to_checksum_address(address)))

    async def is_contract(self, address: str) -> bool:
        if address == constants.ADDRESS_ZERO:
            return False

        return bool(len(await self.get_code(address)))

    async def get_nonce(self, sender: str, entry_point: str, key=0) -> int:
        result = await self._call(
            entry_point,
            encode_function_call(
                constants.GET_NONCE_SIGNATURE,
                [to_checksum_address(sender), key],
            ),
        )
        return eth_abi.decode(["uint256"], result)[0]

    async def get_base_fee(self) -> int:
        latest_block = await self.w3.eth.get_block("latest")
        return (
            latest_block["baseFeePerGas"]
            if "baseFeePerGas" in latest_block
            else 0
        )

    async def get_fees(self) -> tuple[int, int]:
        max_priority_fee_per_gas = await self.w3.eth.max_priority_fee
        max_fee_per_gas = (
            max_priority_fee_per_gas + 2 * await self.get_base_fee()
        )
        return max_fee_per_gas, max_priority_fee_per_gas

    async def get_counterfactual_address(
        self, factory: str, module: str, setup_data: bytes, index: int
    ) -> str:
        result = await self._call(
            factory,
            encode_function_call(
                constants.GET_ADDRESS_FOR_COUNTERFACTUAL_ACCOUNT_SIGNATURE,
                [to_checksum_address(module), setup_data, index],
            ),
        )
        return to_checksum_address(eth_abi.decode(["address"], result)[0])

    async def _call(self, to: str, data: bytes) -> bytes:
        return bytes(
            await self.w3.eth.call(
                {"to": to_checksum_address(to), "data": "0x" + data.hex()}
            )
        )
