import logging
from typing import Optional

import eth_abi
from pydantic import BaseModel, ConfigDict

import relay.constants as constants
import utils.web3
from relay.config import Settings
from relay.errors import ResolutionError
from utils.user_op import Address, Bytes
from utils.validation import validate_address, validate_bytes

logger = logging.getLogger(__name__)


class Account(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner_address: Address
    validation_module_id: Address
    entry_point_address: Address
    chain_id: int
    index: int = 0
    factory_address: Address
    address: Address
    init_code: Bytes = b""
    deployed: bool = False

    def mark_deployed(self) -> "Account":
        return self.model_copy(update={"deployed": True})


def get_module_setup_data(owner_address: str) -> bytes:
    return utils.web3.encode_function_call(
        constants.INIT_FOR_SMART_ACCOUNT_SIGNATURE, [owner_address]
    )


def get_initializer(
    fallback_handler: str, module_address: str, setup_data: bytes
) -> bytes:
    return utils.web3.encode_function_call(
        constants.INIT_SIGNATURE,
        [fallback_handler, module_address, setup_data],
    )


def get_salt(initializer: bytes, index: int) -> bytes:
    return utils.web3.keccak(
        utils.web3.keccak(initializer) + eth_abi.encode(["uint256"], [index])
    )


def get_proxy_init_code_hash(
    proxy_creation_code: bytes, implementation: str
) -> bytes:
    return utils.web3.keccak(
        proxy_creation_code
        + eth_abi.encode(["uint256"], [int(implementation, 16)])
    )


def get_create2_address(
    factory: str, salt: bytes, init_code_hash: bytes
) -> str:
    address_hash = utils.web3.keccak(
        b"\xff" + bytes.fromhex(factory[2:]) + salt + init_code_hash
    )
    return utils.web3.to_checksum_address(address_hash[-20:])


def get_init_code(
    factory: str, module_address: str, setup_data: bytes, index: int
) -> bytes:
    return bytes.fromhex(factory[2:]) + utils.web3.encode_function_call(
        constants.DEPLOY_COUNTERFACTUAL_ACCOUNT_SIGNATURE,
        [module_address, setup_data, index],
    )


class SmartAccountResolver:
    """Computes counterfactual smart account addresses.

    `resolve` never touches the network: the address is derived with
    CREATE2 from the owner, the validation module and the factory deployed
    for the entry point. Deployment status is read separately with
    `refresh_deployment`.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._accounts: dict[tuple, Account] = {}

    def resolve(
        self,
        owner_address: str,
        validation_module_id: str,
        entry_point_address: str,
        chain_id: int,
        index: Optional[int] = None,
    ) -> Account:
        if index is None:
            index = self.settings.account_index
        owner_address = self._validate_address(owner_address, "owner")
        validation_module_id = self._validate_address(
            validation_module_id, "validation module"
        )
        entry_point_address = self._validate_address(
            entry_point_address, "entry point"
        )
        if isinstance(chain_id, bool) or not (
            isinstance(chain_id, int) and chain_id > 0
        ):
            raise ResolutionError(f"'{chain_id}' is not a valid chain id.")
        if not (isinstance(index, int) and index >= 0):
            raise ResolutionError(f"'{index}' is not a valid account index.")

        key = (
            owner_address,
            validation_module_id,
            entry_point_address,
            chain_id,
            index,
        )
        account = self._accounts.get(key)
        if account is None:
            account = self._accounts.setdefault(key, self._compute(*key))
        return account

    def _compute(
        self,
        owner_address: str,
        validation_module_id: str,
        entry_point_address: str,
        chain_id: int,
        index: int,
    ) -> Account:
        deployment = self.settings.get_factory_deployment(entry_point_address)
        if deployment is None:
            raise ResolutionError(
                "No smart account factory is known for the EntryPoint "
                f"{entry_point_address}."
            )
        try:
            proxy_creation_code = validate_bytes(
                self.settings.proxy_creation_code
            )
            factory = validate_address(deployment["factory"])
            implementation = validate_address(deployment["implementation"])
            fallback_handler = validate_address(
                deployment["fallback_handler"]
            )
        except ValueError as e:
            raise ResolutionError(
                f"The smart account factory deployment is malformed: {e}"
            ) from e

        setup_data = get_module_setup_data(owner_address)
        initializer = get_initializer(
            fallback_handler, validation_module_id, setup_data
        )
        address = get_create2_address(
            factory,
            get_salt(initializer, index),
            get_proxy_init_code_hash(proxy_creation_code, implementation),
        )
        logger.debug(
            "Resolved smart account %s for owner %s (index %d)",
            address,
            owner_address,
            index,
        )

        return Account(
            owner_address=owner_address,
            validation_module_id=validation_module_id,
            entry_point_address=entry_point_address,
            chain_id=chain_id,
            index=index,
            factory_address=factory,
            address=address,
            init_code=get_init_code(
                factory, validation_module_id, setup_data, index
            ),
        )

    async def refresh_deployment(self, account: Account, chain) -> Account:
        deployed = await chain.is_contract(account.address)
        if deployed == account.deployed:
            return account
        return account.model_copy(update={"deployed": deployed})

    async def verify(self, account: Account, chain) -> bool:
        expected = await chain.get_counterfactual_address(
            account.factory_address,
            account.validation_module_id,
            get_module_setup_data(account.owner_address),
            account.index,
        )
        return expected == account.address

    @classmethod
    def _validate_address(cls, v, name: str) -> str:
        try:
            return validate_address(v)
        except ValueError as e:
            raise ResolutionError(
                f"Malformed {name} address '{v}': {e}"
            ) from e
