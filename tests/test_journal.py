import datetime

import pytest

import db.service
from tests.utils.common_classes import TX_HASH
from utils.client import Receipt, SubmissionHandle
from utils.user_op import UserOp


class StubBundler:
    def __init__(self, receipts):
        self.receipts = receipts
        self.requested = []

    async def get_receipt(self, user_op_hash):
        self.requested.append(user_op_hash)
        return self.receipts.get(user_op_hash)


def get_receipt(user_op_hash, success=True):
    return Receipt(
        user_op_hash=user_op_hash,
        transaction_hash=TX_HASH,
        success=success,
        block_number=123,
        actual_gas_cost=10**15,
        reason=None if success else "AA33 reverted",
    )


async def add_submissions(session, account, count):
    now = datetime.datetime.now(datetime.timezone.utc)
    hashes = []
    for nonce in range(count):
        handle = SubmissionHandle(
            user_op_hash="0x" + f"{nonce:064x}",
            entry_point=account.entry_point_address,
            submitted_at=now + datetime.timedelta(seconds=nonce),
        )
        await db.service.add_submission(
            session,
            UserOp(sender=account.address, nonce=nonce, call_data="0x01"),
            handle,
            account.chain_id,
            sponsored=bool(nonce % 2),
        )
        hashes.append(handle.user_op_hash)
    await session.commit()

    return hashes


@pytest.mark.asyncio
async def test_journals_submissions(session_factory, account):
    async with session_factory() as session:
        hashes = await add_submissions(session, account, 3)

        submission = await db.service.get_submission_by_hash(
            session, hashes[1]
        )
        last_submissions = await db.service.get_last_submissions(session, 2)

    assert submission.sender == account.address
    assert submission.nonce == 1
    assert submission.call_data == b"\x01"
    assert submission.sponsored
    assert submission.is_pending
    assert submission.serialize()["nonce"] == "0x1"
    assert [s.user_op_hash for s in last_submissions] == [
        hashes[2],
        hashes[1],
    ]


@pytest.mark.asyncio
async def test_updates_receipts(session_factory, account):
    async with session_factory() as session:
        hashes = await add_submissions(session, account, 2)
        await db.service.update_receipt(
            session, get_receipt(hashes[0], success=False)
        )
        await session.commit()

        pending = await db.service.get_pending_submissions(session)
        submission = await db.service.get_submission_by_hash(
            session, hashes[0]
        )

    assert [s.user_op_hash for s in pending] == [hashes[1]]
    assert submission.success is False
    assert submission.reason == "AA33 reverted"
    assert submission.tx_hash == TX_HASH
    assert submission.block_number == 123
    assert submission.actual_gas_cost == 10**15
    assert submission.included_at is not None


@pytest.mark.asyncio
async def test_ignores_receipt_of_unknown_submission(session_factory):
    async with session_factory() as session:
        submission = await db.service.update_receipt(
            session, get_receipt("0x" + "ff" * 32)
        )

    assert submission is None


@pytest.mark.asyncio
async def test_refreshes_pending_receipts(session_factory, account):
    async with session_factory() as session:
        hashes = await add_submissions(session, account, 2)
        bundler = StubBundler({hashes[1]: get_receipt(hashes[1])})

        refreshed = [
            await db.service.refresh_receipt(submission, bundler)
            for submission in await db.service.get_pending_submissions(
                session
            )
        ]
        await session.commit()

        pending = await db.service.get_pending_submissions(session)

    assert refreshed == [False, True]
    assert bundler.requested == hashes
    assert [s.user_op_hash for s in pending] == [hashes[0]]
