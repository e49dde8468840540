ADDRESS_ZERO = "0x0000000000000000000000000000000000000000"

UINT256_MAX = 2**256 - 1

DEFAULT_ENTRY_POINT_ADDRESS = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"
DEFAULT_ECDSA_OWNERSHIP_MODULE = "0x0000001c5b32F37F5beA87BDD5374eB2aC54eA8e"

# Smart account v2 deployments keyed by the lower-cased entry point address
ACCOUNT_FACTORIES = {
    DEFAULT_ENTRY_POINT_ADDRESS.lower(): {
        "factory": "0x000000a56Aaca3e9a4C479ea6b6CD0DbcB6634F5",
        "implementation": "0x0000002512019Dafb59528B82CB92D3c5D2423aC",
        "fallback_handler": "0x0bBa6d96BD616BedC6BFaa341742FD43c60b83C1",
    },
}

# Creation code of the factory's account proxy, without the constructor
# argument (the implementation address, appended as uint256).
PROXY_CREATION_CODE = (
    "0x6080604052348015600f57600080fd5b506040516101613803806101618339"
    "81016040819052602c91607b565b6001600160a01b038116605257604051631a"
    "b0b3a560e21b815260040160405180910390fd5b6000555060a9565b60006020"
    "8284031215608c57600080fd5b81516001600160a01b038116811460a257600080"
    "fd5b9392505050565b60aa806100b76000396000f3fe6080604052600080546001"
    "600160a01b0316368280378082368385600019f43d6000803e80801560735760"
    "00f35b3d6000fd"
)

EXECUTE_SIGNATURE = "execute_ncC(address,uint256,bytes)"
EXECUTE_BATCH_SIGNATURE = "executeBatch_y6U(address[],uint256[],bytes[])"
INIT_SIGNATURE = "init(address,address,bytes)"
INIT_FOR_SMART_ACCOUNT_SIGNATURE = "initForSmartAccount(address)"
DEPLOY_COUNTERFACTUAL_ACCOUNT_SIGNATURE = (
    "deployCounterFactualAccount(address,bytes,uint256)"
)
GET_ADDRESS_FOR_COUNTERFACTUAL_ACCOUNT_SIGNATURE = (
    "getAddressForCounterFactualAccount(address,bytes,uint256)"
)
GET_NONCE_SIGNATURE = "getNonce(address,uint192)"
SAFE_MINT_SIGNATURE = "safeMint(address)"

# Placeholder ECDSA signature used while the bundler estimates gas
DUMMY_ECDSA_SIGNATURE = bytes.fromhex(
    "ff" * 15 + "f0" + "00" * 16 + "7a" + "aa" * 31 + "1c"
)

# JSON-RPC error codes returned by bundlers for rejected UserOps
BUNDLER_REJECTION_CODES = {
    -32500: "Rejected by the EntryPoint simulation",
    -32501: "Rejected by the paymaster",
    -32502: "Opcode validation failed",
    -32503: "Out of the time range",
    -32504: "Paymaster or aggregator is throttled or banned",
    -32505: "Paymaster or aggregator stake is too low",
    -32506: "Unsupported signature aggregator",
    -32507: "Invalid signature",
    -32602: "Invalid UserOp fields",
}
