import asyncio
import contextlib
import logging
from enum import Enum
from typing import Iterable, Optional

import db.service
from relay.config import Settings
from relay.errors import (
    OperationCancelledError,
    SponsorshipDeniedError,
    SubmissionFailed,
)
from utils.account import Account, SmartAccountResolver
from utils.builder import Call, GasEstimator, GasPolicy, UserOperationBuilder
from utils.client import (
    BundlerClient,
    PaymasterClient,
    Receipt,
    SponsorshipMode,
    SubmissionHandle,
)
from utils.nonce import NonceManager
from utils.signer import KeySigner, sign_user_op
from utils.user_op import UserOp

logger = logging.getLogger(__name__)


class State(str, Enum):
    UNRESOLVED = "unresolved"
    BUILT = "built"
    SPONSORED = "sponsored"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    INCLUDED = "included"
    FAILED = "failed"


TERMINAL_STATES = (State.INCLUDED, State.FAILED)


class StepFailure:
    def __init__(self, state: State, cause: BaseException):
        self.state = state
        self.cause = cause

    def __repr__(self):
        return f"StepFailure(state={self.state.value}, cause={self.cause!r})"


class Submission:
    """One trip of a set of calls through the pipeline."""

    def __init__(
        self,
        calls: list[Call],
        mode: SponsorshipMode = SponsorshipMode.NONE,
        gas_policy: Optional[GasPolicy] = None,
        fee_token: Optional[str] = None,
    ):
        self.calls = calls
        self.mode = SponsorshipMode(mode)
        self.gas_policy = gas_policy
        self.fee_token = fee_token
        self.state = State.UNRESOLVED
        self.history = [State.UNRESOLVED]
        self.user_op: Optional[UserOp] = None
        self.handle: Optional[SubmissionHandle] = None
        self.receipt: Optional[Receipt] = None
        self.failure: Optional[StepFailure] = None
        self.sponsored = False

    def __repr__(self):
        return f"Submission(state={self.state.value})"

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def error(self) -> Optional[BaseException]:
        return self.failure.cause if self.failure else None

    def raise_for_state(self) -> None:
        if self.failure is not None:
            raise SubmissionFailed(
                self.failure.state, self.failure.cause
            ) from self.failure.cause


class OperationSubmissionPipeline:
    """resolve -> build -> sponsor -> sign -> submit -> await receipt.

    Every collaborator is passed in explicitly, and the settings are read
    but never changed. The smart account is resolved once by `initialize`
    and cached for the life of the pipeline; several submissions may run
    concurrently against the same pipeline.
    """

    def __init__(
        self,
        settings: Settings,
        signer: KeySigner,
        chain,
        bundler: BundlerClient,
        paymaster: Optional[PaymasterClient] = None,
        resolver: Optional[SmartAccountResolver] = None,
        builder: Optional[UserOperationBuilder] = None,
        session_factory=None,
    ):
        self.settings = settings
        self.signer = signer
        self.chain = chain
        self.bundler = bundler
        self.paymaster = paymaster
        self.resolver = resolver or SmartAccountResolver(settings)
        if builder is None:
            builder = UserOperationBuilder(
                NonceManager(chain),
                GasEstimator(
                    bundler, chain, settings.validation_module_address
                ),
            )
        self.builder = builder
        self.session_factory = session_factory
        self.account: Optional[Account] = None
        self._account_lock = asyncio.Lock()

    async def initialize(self) -> Account:
        async with self._account_lock:
            if self.account is None:
                account = self.resolver.resolve(
                    self.signer.address,
                    self.settings.validation_module_address,
                    self.settings.entry_point_address,
                    self.settings.chain_id,
                )
                self.account = await self.resolver.refresh_deployment(
                    account, self.chain
                )
                logger.info(
                    "Smart account %s for owner %s (deployed: %s)",
                    self.account.address,
                    self.signer.address,
                    self.account.deployed,
                )
        return self.account

    def new_submission(
        self,
        calls: Iterable[Call],
        mode: SponsorshipMode = SponsorshipMode.NONE,
        gas_policy: Optional[GasPolicy] = None,
        fee_token: Optional[str] = None,
    ) -> Submission:
        return Submission(list(calls), mode, gas_policy, fee_token)

    async def run(
        self,
        calls: Iterable[Call],
        mode: SponsorshipMode = SponsorshipMode.NONE,
        gas_policy: Optional[GasPolicy] = None,
        fee_token: Optional[str] = None,
        confirmations: Optional[int] = None,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
        deadline: Optional[float] = None,
    ) -> Submission:
        submission = self.new_submission(calls, mode, gas_policy, fee_token)
        while not submission.done:
            await self.advance(
                submission,
                confirmations=confirmations,
                timeout=timeout,
                cancel=cancel,
                deadline=deadline,
            )
        return submission

    async def advance(
        self,
        submission: Submission,
        confirmations: Optional[int] = None,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
        deadline: Optional[float] = None,
    ) -> Submission:
        if submission.done:
            return submission

        state = submission.state
        steps = {
            State.UNRESOLVED: lambda: self._build(submission),
            State.BUILT: lambda: self._sponsor(submission),
            State.SPONSORED: lambda: self._sign(submission),
            State.SIGNED: lambda: self._submit(submission),
            State.SUBMITTED: lambda: self._await_inclusion(
                submission, confirmations, timeout
            ),
        }
        try:
            next_state = await self._guard(steps[state](), cancel, deadline)
        except asyncio.CancelledError:
            await self._fail(
                submission,
                OperationCancelledError(
                    f"The submission was cancelled in the '{state.value}' "
                    "state."
                ),
            )
            raise
        except Exception as e:
            await self._fail(submission, e)
            return submission

        self._transition(submission, next_state)
        return submission

    async def _build(self, submission: Submission) -> State:
        account = await self.initialize()
        submission.user_op = await self.builder.build(
            account, submission.calls, submission.gas_policy
        )
        return State.BUILT

    async def _sponsor(self, submission: Submission) -> State:
        if submission.mode != SponsorshipMode.NONE:
            try:
                if self.paymaster is None:
                    raise SponsorshipDeniedError(
                        "No paymaster is configured for sponsorship."
                    )
                submission.user_op = await self.paymaster.sponsor(
                    submission.user_op, submission.mode, submission.fee_token
                )
                submission.sponsored = True
            except SponsorshipDeniedError as e:
                if not self.settings.allow_unsponsored_fallback:
                    raise
                logger.warning(
                    "Sponsorship denied for %s, continuing unsponsored: %s",
                    submission.user_op.sender,
                    e.detail,
                )

        if not submission.sponsored:
            logger.info(
                "UserOp for %s is not sponsored, the account pays up to "
                "%d wei",
                submission.user_op.sender,
                submission.user_op.get_required_prefund(),
            )
        return State.SPONSORED

    async def _sign(self, submission: Submission) -> State:
        submission.user_op = sign_user_op(
            submission.user_op,
            self.signer,
            self.settings.entry_point_address,
            self.settings.chain_id,
            self.settings.validation_module_address,
        )
        return State.SIGNED

    async def _submit(self, submission: Submission) -> State:
        submission.handle = await self.bundler.submit(submission.user_op)
        await self._journal(
            submission,
            db.service.add_submission,
            submission.user_op,
            submission.handle,
            self.settings.chain_id,
            sponsored=submission.sponsored,
        )
        return State.SUBMITTED

    async def _await_inclusion(
        self,
        submission: Submission,
        confirmations: Optional[int],
        timeout: Optional[float],
    ) -> State:
        receipt = await self.bundler.await_inclusion(
            submission.handle,
            confirmations=(
                self.settings.confirmations
                if confirmations is None
                else confirmations
            ),
            timeout=timeout,
        )
        submission.receipt = receipt
        if receipt.success and submission.user_op.init_code:
            async with self._account_lock:
                if not self.account.deployed:
                    self.account = self.account.mark_deployed()
                    logger.info(
                        "Smart account %s deployed", self.account.address
                    )

        await self._journal(submission, db.service.update_receipt, receipt)
        return State.INCLUDED

    async def _journal(self, submission: Submission, write, *args, **kwargs):
        # Journal errors never fail a UserOp the bundler already holds.
        if self.session_factory is None:
            return

        try:
            async with self.session_factory() as session:
                await write(session, *args, **kwargs)
                await session.commit()
        except Exception:
            logger.exception(
                "Could not journal the UserOp %s",
                submission.handle.user_op_hash,
            )

    async def _guard(self, coro, cancel, deadline):
        if cancel is None and deadline is None:
            return await coro

        loop = asyncio.get_running_loop()
        if cancel is not None and cancel.is_set():
            coro.close()
            raise OperationCancelledError(
                "The submission was cancelled before the step started."
            )
        if deadline is not None and loop.time() >= deadline:
            coro.close()
            raise OperationCancelledError(
                "The submission deadline has passed."
            )

        step = asyncio.ensure_future(coro)
        waiters = {step}
        if cancel is not None:
            waiters.add(asyncio.ensure_future(cancel.wait()))
        timeout = None if deadline is None else max(0, deadline - loop.time())
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

        if step in done:
            return step.result()

        with contextlib.suppress(asyncio.CancelledError):
            await step
        raise OperationCancelledError(
            "The submission was cancelled."
            if cancel is not None and cancel.is_set()
            else "The submission deadline has passed."
        )

    def _transition(self, submission: Submission, state: State) -> None:
        logger.info(
            "Submission for %s: %s -> %s",
            submission.user_op.sender if submission.user_op else None,
            submission.state.value,
            state.value,
        )
        submission.state = state
        submission.history.append(state)

    async def _fail(self, submission: Submission, error: BaseException):
        failed_state = submission.state
        submission.failure = StepFailure(failed_state, error)
        logger.error(
            "Submission failed in the '%s' state: %s",
            failed_state.value,
            error,
        )
        if (
            submission.user_op is not None
            and submission.handle is None
            and self.account is not None
        ):
            await self.builder.nonces.release(
                self.account, submission.user_op.nonce
            )
        submission.state = State.FAILED
        submission.history.append(State.FAILED)
