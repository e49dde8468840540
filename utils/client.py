import asyncio
import itertools
import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from httpx import AsyncClient, Response, TransportError
from pydantic import BaseModel, ConfigDict, Field, ValidationError

import relay.constants as constants
import utils.web3
from relay.config import Settings
from relay.errors import (
    BundlerUnavailableError,
    GasEstimationError,
    InclusionTimeoutError,
    PipelineError,
    RejectedByBundlerError,
    SponsorshipDeniedError,
    SponsorshipServiceError,
)
from utils.user_op import Uint256, UserOp
from utils.validation import validate_gas_fields

logger = logging.getLogger(__name__)

PAYMASTER_GAS_FIELDS = {
    "call_gas_limit": "callGasLimit",
    "verification_gas_limit": "verificationGasLimit",
    "pre_verification_gas": "preVerificationGas",
}


class SponsorshipMode(str, Enum):
    NONE = "NONE"
    SPONSORED = "SPONSORED"
    ERC20 = "ERC20"


class SubmissionHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_op_hash: str
    entry_point: str
    submitted_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class Receipt(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_op_hash: str
    transaction_hash: str
    success: bool
    block_number: Uint256
    block_hash: Optional[str] = None
    actual_gas_cost: Uint256 = 0
    actual_gas_used: Uint256 = 0
    reason: Optional[str] = None

    @classmethod
    def from_rpc(cls, data: dict) -> "Receipt":
        receipt = data.get("receipt") or {}
        return cls(
            user_op_hash=data["userOpHash"],
            transaction_hash=receipt.get(
                "transactionHash", data.get("transactionHash")
            ),
            success=data["success"],
            block_number=receipt.get("blockNumber", data.get("blockNumber")),
            block_hash=receipt.get("blockHash"),
            actual_gas_cost=data.get("actualGasCost") or 0,
            actual_gas_used=data.get("actualGasUsed") or 0,
            reason=data.get("reason") or None,
        )


def is_hash(v) -> bool:
    return isinstance(v, str) and bool(re.fullmatch(r"0x[0-9a-fA-F]{64}", v))


class RetryableResponseError(Exception):
    pass


class RpcClient:
    """JSON-RPC 2.0 over an httpx client, with bounded retries.

    Transport failures and 429/5xx responses are retried with exponential
    backoff; a JSON-RPC error object is handed to `_handle_error` and is
    never retried.
    """

    service_name = "RPC"
    unavailable_error = PipelineError

    def __init__(self, client: AsyncClient, url: str, settings: Settings):
        self.client = client
        self.url = url
        self.settings = settings
        self._ids = itertools.count(1)

    async def _make_request(self, method: str, params: list):
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        attempts = max(1, self.settings.rpc_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                response = await self.client.post(self.url, json=payload)
                data = self._parse_response(method, response)
            except (TransportError, RetryableResponseError) as e:
                if attempt == attempts:
                    raise self.unavailable_error(
                        f"The {self.service_name} request '{method}' failed "
                        f"after {attempts} attempt(s): {e}"
                    ) from e

                delay = self._get_backoff(attempt)
                logger.warning(
                    "%s request '%s' failed (%s), retrying in %.2fs",
                    self.service_name,
                    method,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
                continue

            if data.get("error"):
                raise self._handle_error(method, data["error"])
            return data.get("result")

    def _parse_response(self, method: str, response: Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code == 429 or response.status_code >= 500:
            raise RetryableResponseError(f"HTTP {response.status_code}")
        if isinstance(data, dict) and data.get("error"):
            return data
        if not response.is_success or not isinstance(data, dict):
            raise self.unavailable_error(
                f"The {self.service_name} returned an unexpected response to "
                f"'{method}' (HTTP {response.status_code})."
            )
        return data

    def _get_backoff(self, attempt: int) -> float:
        return min(
            self.settings.rpc_backoff_base * 2 ** (attempt - 1),
            self.settings.rpc_backoff_max,
        )

    def _handle_error(self, method: str, error) -> Exception:
        return self.unavailable_error(
            f"The {self.service_name} request '{method}' failed: {error}"
        )


class BundlerClient(RpcClient):
    service_name = "bundler"
    unavailable_error = BundlerUnavailableError

    def __init__(
        self,
        client: AsyncClient,
        settings: Settings,
        url: Optional[str] = None,
        entry_point: Optional[str] = None,
    ):
        super().__init__(client, url or settings.bundler_url, settings)
        self.entry_point = entry_point or settings.entry_point_address

    async def submit(self, user_op: UserOp) -> SubmissionHandle:
        user_op_hash = await self._make_request(
            "eth_sendUserOperation", [user_op.to_rpc(), self.entry_point]
        )
        if not is_hash(user_op_hash):
            raise BundlerUnavailableError(
                f"The bundler returned an invalid UserOp hash: {user_op_hash}"
            )

        logger.info("UserOp %s accepted by the bundler", user_op_hash)
        return SubmissionHandle(
            user_op_hash=user_op_hash, entry_point=self.entry_point
        )

    async def estimate_user_op_gas(self, user_op: UserOp) -> dict:
        result = await self._make_request(
            "eth_estimateUserOperationGas",
            [user_op.to_rpc(), self.entry_point],
        )
        if not isinstance(result, dict):
            raise BundlerUnavailableError(
                "The bundler returned an invalid gas estimation payload."
            )
        return result

    async def get_user_op(self, user_op_hash: str) -> Optional[dict]:
        return await self._make_request(
            "eth_getUserOperationByHash", [user_op_hash]
        )

    async def get_receipt(self, user_op_hash: str) -> Optional[Receipt]:
        result = await self._make_request(
            "eth_getUserOperationReceipt", [user_op_hash]
        )
        if result is None:
            return None

        try:
            return Receipt.from_rpc(result)
        except (KeyError, TypeError, ValidationError) as e:
            raise BundlerUnavailableError(
                f"The bundler returned an invalid receipt payload: {e}"
            ) from e

    async def supported_entry_points(self) -> list[str]:
        return await self._make_request("eth_supportedEntryPoints", [])

    async def get_block_number(self) -> int:
        return int(await self._make_request("eth_blockNumber", []), 16)

    async def await_inclusion(
        self,
        handle: SubmissionHandle,
        confirmations: int = 1,
        timeout: Optional[float] = None,
    ) -> Receipt:
        if timeout is None:
            timeout = self.settings.inclusion_timeout
        try:
            return await asyncio.wait_for(
                self._wait_for_receipt(handle, confirmations), timeout
            )
        except asyncio.TimeoutError as e:
            raise InclusionTimeoutError(handle, timeout) from e

    async def _wait_for_receipt(
        self, handle: SubmissionHandle, confirmations: int
    ) -> Receipt:
        delay = self.settings.receipt_poll_interval
        while True:
            receipt = await self.get_receipt(handle.user_op_hash)
            if receipt is not None and await self._is_confirmed(
                receipt, confirmations
            ):
                logger.info(
                    "UserOp %s included in transaction %s (success: %s)",
                    handle.user_op_hash,
                    receipt.transaction_hash,
                    receipt.success,
                )
                return receipt

            await asyncio.sleep(delay)
            delay = min(delay * 2, self.settings.receipt_poll_max_interval)

    async def _is_confirmed(
        self, receipt: Receipt, confirmations: int
    ) -> bool:
        if confirmations <= 1:
            return True

        block_number = await self.get_block_number()
        return block_number - receipt.block_number + 1 >= confirmations

    def _handle_error(self, method: str, error) -> Exception:
        if not isinstance(error, dict):
            return RejectedByBundlerError(str(error))

        code = error.get("code")
        reason = error.get("message") or constants.BUNDLER_REJECTION_CODES.get(
            code, str(error)
        )
        return RejectedByBundlerError(reason, code=code)


class PaymasterClient(RpcClient):
    service_name = "paymaster"
    unavailable_error = SponsorshipServiceError

    def __init__(
        self,
        client: AsyncClient,
        settings: Settings,
        url: Optional[str] = None,
    ):
        super().__init__(client, url or settings.paymaster_url, settings)

    async def sponsor(
        self,
        user_op: UserOp,
        mode: SponsorshipMode,
        fee_token: Optional[str] = None,
    ) -> UserOp:
        mode = SponsorshipMode(mode)
        if mode == SponsorshipMode.NONE:
            return user_op

        context = {"mode": mode.value, "calculateGasLimits": True}
        if mode == SponsorshipMode.ERC20:
            fee_token = fee_token or self.settings.fee_token_address
            if not utils.web3.is_address(fee_token):
                raise SponsorshipDeniedError(
                    "ERC20 sponsorship requires a fee token address."
                )
            context["tokenInfo"] = {
                "feeTokenAddress": utils.web3.to_checksum_address(fee_token)
            }
        else:
            context["sponsorshipInfo"] = {
                "webhookData": {},
                "smartAccountInfo": {"name": "BICONOMY", "version": "2.0.0"},
            }

        result = await self._make_request(
            "pm_sponsorUserOperation", [user_op.unsigned().to_rpc(), context]
        )
        if not (
            isinstance(result, dict)
            and isinstance(result.get("paymasterAndData"), str)
            and len(result["paymasterAndData"]) > 2
        ):
            raise SponsorshipServiceError(
                "The paymaster returned an invalid sponsorship payload."
            )

        changes = {"paymaster_and_data": result["paymasterAndData"]}
        for field, rpc_name in PAYMASTER_GAS_FIELDS.items():
            if result.get(rpc_name) is not None:
                changes[field] = result[rpc_name]
        try:
            sponsored = user_op.unsigned(**changes)
        except ValidationError as e:
            raise SponsorshipServiceError(
                f"The paymaster returned malformed sponsorship fields: {e}"
            ) from e
        try:
            validate_gas_fields(sponsored)
        except GasEstimationError as e:
            raise SponsorshipServiceError(
                f"The paymaster returned unusable gas values: {e.detail}"
            ) from e

        logger.info(
            "UserOp for %s sponsored by the paymaster (%s)",
            user_op.sender,
            mode.value,
        )
        return sponsored

    def _handle_error(self, method: str, error) -> Exception:
        if not isinstance(error, dict):
            return SponsorshipDeniedError(
                f"The paymaster denied sponsorship: {error}"
            )

        return SponsorshipDeniedError(
            f"The paymaster denied sponsorship: "
            f"{error.get('message') or error}",
            code=error.get("code"),
        )
