from typing import Optional


class PipelineError(Exception):
    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ResolutionError(PipelineError):
    pass


class UnresolvedAccountError(PipelineError):
    pass


class InvalidCallError(PipelineError):
    pass


class GasEstimationError(PipelineError):
    pass


class SignedOperationError(PipelineError):
    pass


class SponsorshipDeniedError(PipelineError):
    def __init__(self, detail: str, code: Optional[int] = None):
        super().__init__(detail)
        self.code = code


class SponsorshipServiceError(PipelineError):
    retryable = True


class RejectedByBundlerError(PipelineError):
    def __init__(self, reason: str, code: Optional[int] = None):
        super().__init__(
            f"The bundler rejected the UserOp ({code}): {reason}"
            if code is not None
            else f"The bundler rejected the UserOp: {reason}"
        )
        self.code = code
        self.reason = reason


class BundlerUnavailableError(PipelineError):
    retryable = True


class InclusionTimeoutError(PipelineError, TimeoutError):
    def __init__(self, handle, timeout: float):
        super().__init__(
            f"The UserOp {handle.user_op_hash} was not included within "
            f"{timeout}s; it may still be mined, query it by hash."
        )
        self.handle = handle
        self.timeout = timeout


class OperationCancelledError(PipelineError):
    pass


class SubmissionFailed(PipelineError):
    def __init__(self, state, cause: BaseException):
        super().__init__(
            f"The submission failed in the '{state.value}' state: "
            f"{type(cause).__name__}: {cause}"
        )
        self.state = state
        self.cause = cause
