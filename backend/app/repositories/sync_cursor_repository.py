"""Last-processed block bookkeeping per watched contract."""

from __future__ import annotations

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import SyncCursor

from .entity_resolver import normalize_address


class SyncCursorRepository:
    """Read and advance sync cursors. Cursors only ever move forward."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, contract_address: str, *, for_update: bool = False) -> SyncCursor | None:
        query = select(SyncCursor).where(
            SyncCursor.contract_address == normalize_address(contract_address)
        )
        if for_update:
            query = query.with_for_update()
        return self._session.scalars(query).first()

    def list_cursors(self) -> list[SyncCursor]:
        return list(self._session.scalars(select(SyncCursor).order_by(SyncCursor.contract_address)))

    def last_block(self, contract_address: str) -> int | None:
        cursor = self.get(contract_address)
        return cursor.last_block if cursor else None

    def seed(self, contract_address: str, contract_name: str | None = None) -> SyncCursor:
        """Ensure a cursor row exists, starting at block 0."""

        address = normalize_address(contract_address)
        cursor = self.get(address, for_update=True)
        if cursor is not None:
            if contract_name and cursor.contract_name != contract_name:
                cursor.contract_name = contract_name
            return cursor

        cursor = SyncCursor(contract_address=address, contract_name=contract_name, last_block=0)
        try:
            with self._session.begin_nested():
                self._session.add(cursor)
                self._session.flush()
        except IntegrityError:
            cursor = self.get(address, for_update=True)
            if cursor is None:
                raise
        return cursor

    def advance(
        self,
        contract_address: str,
        block_number: int,
        *,
        block_hash: str | None = None,
        contract_name: str | None = None,
    ) -> bool:
        """Move the cursor to ``block_number``.

        Returns ``False`` and leaves the row untouched when ``block_number`` is
        behind the stored block. Re-advancing to the stored block only
        refreshes the block hash.
        """

        if block_number < 0:
            raise ValueError("block_number must not be negative")

        cursor = self.seed(contract_address, contract_name)
        if block_number < cursor.last_block:
            logger.warning(
                "Ignoring backward cursor move for {}: {} -> {}",
                cursor.contract_address,
                cursor.last_block,
                block_number,
            )
            return False
        if block_number == cursor.last_block:
            if block_hash and cursor.last_block_hash != block_hash:
                cursor.last_block_hash = block_hash
            return False

        logger.info(
            "Advancing cursor for {} from block {} to {}",
            cursor.contract_address,
            cursor.last_block,
            block_number,
        )
        cursor.last_block = block_number
        cursor.last_block_hash = block_hash
        return True


__all__ = ["SyncCursorRepository"]
