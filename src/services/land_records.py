"""Per-owner land parcel persistence.

Parcels are keyed by survey number inside the owner's partition, so
declaring the same survey number twice replaces the earlier entry
instead of double-counting its area.
"""

from __future__ import annotations

import structlog

from src.models.errors import ConcurrencyConflict, InputError
from src.models.land import LandParcel
from src.services.store import StateStore

logger = structlog.get_logger(__name__)

KIND = "land_parcel"


def _parcel_key(survey_number: str) -> str:
    return survey_number.strip().upper().replace(" ", "")


class LandRecordStore:
    __slots__ = ("_max_retries", "_store")

    def __init__(self, store: StateStore, *, max_retries: int = 3) -> None:
        self._store = store
        self._max_retries = max_retries

    async def upsert(self, parcel: LandParcel) -> LandParcel:
        key = _parcel_key(parcel.survey_number)
        data = parcel.model_dump(mode="json")
        for _ in range(self._max_retries):
            existing = await self._store.get(KIND, parcel.owner_id, key)
            try:
                await self._store.put(
                    KIND,
                    parcel.owner_id,
                    key,
                    data,
                    expected_version=existing.version if existing is not None else 0,
                )
            except ConcurrencyConflict:
                continue
            return parcel
        raise ConcurrencyConflict(KIND, key, f"gave up after {self._max_retries} attempts")

    async def save_parcels(self, owner_id: str, parcels: list[LandParcel]) -> list[LandParcel]:
        """Persist ``parcels`` for ``owner_id`` and return the full holding."""
        for parcel in parcels:
            if parcel.owner_id != owner_id:
                raise InputError("parcels", "all parcels must belong to the same owner")
        for parcel in parcels:
            await self.upsert(parcel)
        logger.info("land.parcels_saved", parcels=len(parcels))
        return await self.list_by_owner(owner_id)

    async def list_by_owner(self, owner_id: str) -> list[LandParcel]:
        docs = await self._store.list_partition(KIND, owner_id)
        parcels = [LandParcel.model_validate(doc.data) for doc in docs]
        parcels.sort(key=lambda p: _parcel_key(p.survey_number))
        return parcels

    async def delete_owner(self, owner_id: str) -> int:
        return await self._store.delete_partition(KIND, owner_id)
