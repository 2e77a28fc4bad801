"""Land parcel models and area aggregation.

Revenue records across India quote areas in different local units.  All
eligibility arithmetic happens in acres; ``AREA_IN_ACRES`` holds the
conversion factors.
"""

from __future__ import annotations

from typing import Final

from pydantic import BaseModel, Field

from src.models.enums import AreaUnit, LandCategory

AREA_IN_ACRES: Final[dict[AreaUnit, float]] = {
    AreaUnit.ACRE: 1.0,
    AreaUnit.HECTARE: 2.4710538147,
    AreaUnit.GUNTHA: 0.025,  # 40 guntha = 1 acre
    AreaUnit.CENT: 0.01,  # 100 cents = 1 acre
    AreaUnit.SQUARE_METRE: 0.000247105381,
}


def to_acres(area: float, unit: AreaUnit) -> float:
    return area * AREA_IN_ACRES[unit]


class LandParcel(BaseModel):
    model_config = {"frozen": True}

    survey_number: str = Field(..., min_length=1)
    area: float = Field(..., ge=0)
    area_unit: AreaUnit = AreaUnit.ACRE
    category: LandCategory
    owner_id: str

    @property
    def area_acres(self) -> float:
        return to_acres(self.area, self.area_unit)


class LandHolding(BaseModel):
    """Aggregate of one owner's parcels used for eligibility."""

    owner_id: str
    total_area_acres: float = 0.0
    categories: frozenset[LandCategory] = frozenset()
    parcel_count: int = 0

    @classmethod
    def aggregate(cls, owner_id: str, parcels: list[LandParcel]) -> LandHolding:
        total = sum(p.area_acres for p in parcels)
        return cls(
            owner_id=owner_id,
            # Rounded so 2.0 + 1.5 compares cleanly against a 3.5 bound.
            total_area_acres=round(total, 6),
            categories=frozenset(p.category for p in parcels),
            parcel_count=len(parcels),
        )
