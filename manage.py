import asyncio

import typer
from httpx import AsyncClient

import db.service
import db.utils
from db.base import async_session, engine
from relay.config import settings
from utils.client import BundlerClient

cli = typer.Typer()


@cli.command(help="Create the journal tables")
def initialize_db(
    drop: bool = typer.Option(False, help="Drop the existing tables first")
):
    asyncio.run(db.utils.init_models(engine, drop=drop))
    print(f"Database `{settings.db_url}` initialized")


@cli.command(
    help="Ask the bundler for receipts of the journaled UserOps that are "
    "still pending"
)
def refresh_receipts():
    refreshed, pending = asyncio.run(_refresh_receipts())
    print(f"{refreshed} UserOp(s) included, {pending} still pending")


async def _refresh_receipts():
    refreshed = 0
    async with AsyncClient(timeout=settings.rpc_timeout) as client:
        bundler = BundlerClient(client, settings)
        async with async_session() as session:
            submissions = await db.service.get_pending_submissions(session)
            for submission in submissions:
                if await db.service.refresh_receipt(submission, bundler):
                    refreshed += 1
            await session.commit()

    return refreshed, len(submissions) - refreshed


if __name__ == "__main__":
    cli()
