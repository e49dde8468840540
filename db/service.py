import datetime
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Submission

logger = logging.getLogger(__name__)


async def add_submission(
    session: AsyncSession, user_op, handle, chain_id: int, sponsored=False
) -> Submission:
    submission = Submission(
        user_op_hash=handle.user_op_hash,
        entry_point=handle.entry_point,
        chain_id=chain_id,
        submitted_at=handle.submitted_at,
        sponsored=sponsored,
        **dict(user_op),
    )
    session.add(submission)

    return submission


async def get_submission_by_hash(
    session: AsyncSession, user_op_hash: str
) -> Submission:
    result = await session.execute(
        select(Submission).where(Submission.user_op_hash == user_op_hash)
    )
    return result.scalar()


async def get_pending_submissions(session: AsyncSession) -> list[Submission]:
    result = await session.execute(
        select(Submission)
        .where(Submission.tx_hash.is_(None))
        .order_by(Submission.submitted_at)
    )
    return list(result.scalars().all())


async def get_last_submissions(
    session: AsyncSession, count: int
) -> list[Submission]:
    result = await session.execute(
        select(Submission)
        .order_by(Submission.submitted_at.desc())
        .limit(count)
    )
    return list(result.scalars().all())


async def update_receipt(session: AsyncSession, receipt) -> Submission:
    submission = await get_submission_by_hash(session, receipt.user_op_hash)
    if submission is None:
        logger.warning(
            "No journaled submission for the UserOp %s", receipt.user_op_hash
        )
    else:
        apply_receipt(submission, receipt)

    return submission


def apply_receipt(submission: Submission, receipt) -> None:
    submission.success = receipt.success
    submission.tx_hash = receipt.transaction_hash
    submission.block_number = receipt.block_number
    submission.actual_gas_cost = receipt.actual_gas_cost
    submission.reason = receipt.reason
    submission.included_at = datetime.datetime.now(datetime.timezone.utc)


async def refresh_receipt(submission: Submission, bundler) -> bool:
    if not submission.is_pending:
        return True

    receipt = await bundler.get_receipt(submission.user_op_hash)
    if receipt is None:
        return False

    apply_receipt(submission, receipt)
    return True
