import asyncio
import logging

logger = logging.getLogger(__name__)


class NonceManager:
    """Hands out UserOp nonces, one at a time per smart account.

    The on-chain EntryPoint nonce is read under a per-account lock and
    compared with the last nonce reserved locally, so concurrent builds
    for the same account never get the same value. A released nonce
    below the last reserved one is a gap, and the next reservation fills
    it before handing out new values.
    """

    def __init__(self, chain, key: int = 0):
        self.chain = chain
        self.key = key
        self._locks: dict[str, asyncio.Lock] = {}
        self._reserved: dict[str, int] = {}
        self._released: dict[str, set[int]] = {}

    def _get_lock(self, address: str) -> asyncio.Lock:
        return self._locks.setdefault(address.lower(), asyncio.Lock())

    async def reserve(self, account) -> int:
        address = account.address.lower()
        async with self._get_lock(address):
            on_chain_nonce = await self._get_on_chain_nonce(account)
            gaps = {
                nonce
                for nonce in self._released.pop(address, set())
                if nonce >= on_chain_nonce
            }
            last_reserved = self._reserved.get(address)
            if gaps:
                nonce = min(gaps)
                gaps.remove(nonce)
                if gaps:
                    self._released[address] = gaps
            elif last_reserved is None:
                nonce = on_chain_nonce
            else:
                nonce = max(on_chain_nonce, last_reserved + 1)
            if last_reserved is None or nonce > last_reserved:
                self._reserved[address] = nonce

        logger.debug("Reserved nonce %d for %s", nonce, account.address)
        return nonce

    async def release(self, account, nonce: int) -> None:
        address = account.address.lower()
        async with self._get_lock(address):
            last_reserved = self._reserved.get(address)
            if last_reserved is None or nonce > last_reserved:
                return

            released = self._released.setdefault(address, set())
            released.add(nonce)
            while last_reserved is not None and last_reserved in released:
                released.remove(last_reserved)
                last_reserved = last_reserved - 1 if last_reserved else None
            if last_reserved is None:
                del self._reserved[address]
            else:
                self._reserved[address] = last_reserved
            if not released:
                del self._released[address]

        logger.debug("Released nonce %d for %s", nonce, account.address)

    async def _get_on_chain_nonce(self, account) -> int:
        if not account.deployed:
            return 0

        return await self.chain.get_nonce(
            account.address, account.entry_point_address, self.key
        )
