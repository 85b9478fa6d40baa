"""
Manual stamp entry: find a store customer by email, then add N stamps.
"""

import asyncio
import logging
from typing import Optional

from postgrest.exceptions import APIError
from supabase import AsyncClient

from perks.core.errors import (
    CardBusyError,
    InvalidRequestError,
    NotFoundError,
    PartialBatchError,
    PerksError,
    RemoteCallError,
)
from perks.domain.schemas import ManualLookupResponse, ManualStampResponse, Notice
from perks.repositories.customer import CustomerRepository
from perks.repositories.loyalty_card import LoyaltyCardRepository
from perks.services.actions import ActionStateMachine
from perks.services.ledger import RemoteLedgerClient

logger = logging.getLogger(__name__)

MAX_BATCH_STAMPS = 50


class ManualStampService:
    """Backs the "add stamps manually" dialog of a store dashboard."""

    def __init__(
        self,
        db: AsyncClient,
        ledger: RemoteLedgerClient,
        store_id: str,
        location_id: Optional[str] = None,
        machine: Optional[ActionStateMachine] = None,
    ):
        self._db = db
        self._ledger = ledger
        self._machine = machine
        self.store_id = store_id
        self.location_id = location_id

    async def lookup(self, email: Optional[str]) -> ManualLookupResponse:
        """Find the customer registered at this store with `email`, and their card."""
        if not email or not email.strip():
            raise InvalidRequestError("Please enter an email address.")

        try:
            customer = await CustomerRepository.find_by_email(self._db, self.store_id, email)
        except APIError as e:
            logger.error(f"Customer lookup failed for store {self.store_id}: {e.message}")
            raise RemoteCallError(e.message or "Error finding customer") from e

        if not customer:
            raise NotFoundError("No customer with this email is registered at your store.")

        card = await LoyaltyCardRepository.get_by_customer(self._db, customer["id"])
        if not card:
            raise NotFoundError(
                "No loyalty card found for this customer. "
                "They may have an account but haven't used your QR code yet."
            )

        return ManualLookupResponse(
            customer_id=customer["id"],
            full_name=customer.get("full_name"),
            email=customer.get("email"),
            loyalty_card_id=card["id"],
        )

    async def add_stamps(
        self, loyalty_card_id: str, stamps: int, full_name: Optional[str] = None
    ) -> ManualStampResponse:
        """Issue `stamps` independent add-stamp calls concurrently.

        The card is held for the whole batch, so stamp, redeem and undo on it
        are refused meanwhile. If any call fails the first error is raised as
        PartialBatchError. Stamps that did land are not rolled back.
        """
        if not loyalty_card_id:
            raise InvalidRequestError("Please find a customer first.")
        if stamps < 1 or stamps > MAX_BATCH_STAMPS:
            raise InvalidRequestError(f"Stamps must be between 1 and {MAX_BATCH_STAMPS}.")

        if self._machine is not None and not self._machine.begin_batch(loyalty_card_id):
            raise CardBusyError("Another action on this card is still in progress.")
        try:
            results = await asyncio.gather(
                *(
                    self._ledger.add_stamp(loyalty_card_id, self.store_id, location_id=self.location_id)
                    for _ in range(stamps)
                ),
                return_exceptions=True,
            )
        finally:
            if self._machine is not None:
                self._machine.end_batch(loyalty_card_id)

        errors = [r for r in results if isinstance(r, BaseException)]
        for error in errors:
            if not isinstance(error, PerksError):
                raise error

        applied = len(results) - len(errors)
        if errors:
            logger.warning(
                f"Manual batch on card {loyalty_card_id}: {applied}/{stamps} stamps applied before failure"
            )
            raise PartialBatchError(errors[0].message, applied=applied, requested=stamps)

        logger.info(f"Added {stamps} manual stamp(s) to card {loyalty_card_id}")
        return ManualStampResponse(
            applied=applied,
            notice=Notice(
                title="Stamps Added!",
                description=f"{stamps} stamp(s) added for {full_name or 'customer'}.",
            ),
        )
