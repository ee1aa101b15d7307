"""In-memory patio and building stores consumed by the engine."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from building_heights import BuildingHeightManager
from models import Building, Patio
from shadow_engine import BuildingIndex

logger = logging.getLogger(__name__)

PatioListener = Callable[[Patio], None]


class PatioRepository:
    def __init__(self, patios: list[Patio] | None = None) -> None:
        self._patios: dict[str, Patio] = {p.id: p for p in patios or []}
        self._listeners: list[PatioListener] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._patios)

    def __contains__(self, patio_id: str) -> bool:
        return patio_id in self._patios

    def get(self, patio_id: str) -> Patio | None:
        return self._patios.get(patio_id)

    def all(self) -> list[Patio]:
        return sorted(self._patios.values(), key=lambda p: p.id)

    def active(self) -> list[Patio]:
        return [p for p in self.all() if p.active]

    def subscribe(self, listener: PatioListener) -> None:
        self._listeners.append(listener)

    def upsert(self, patio: Patio) -> None:
        """Store a patio and notify listeners when geometry or height changed."""
        with self._lock:
            previous = self._patios.get(patio.id)
            self._patios[patio.id] = patio
        changed = previous is None or (
            not previous.polygon.equals(patio.polygon)
            or previous.height_override != patio.height_override
        )
        if previous is not None and changed:
            for listener in self._listeners:
                listener(patio)

    def remove(self, patio_id: str) -> None:
        with self._lock:
            self._patios.pop(patio_id, None)


class BuildingRepository:
    """Holds buildings and the spatial index rebuilt whenever they change."""

    def __init__(self, buildings: list[Building] | None = None, heights: BuildingHeightManager | None = None) -> None:
        self.heights = heights or BuildingHeightManager()
        self._buildings: dict[str, Building] = {b.id: b for b in buildings or []}
        self._index = BuildingIndex(list(self._buildings.values()), self.heights)

    def __len__(self) -> int:
        return len(self._buildings)

    @property
    def index(self) -> BuildingIndex:
        return self._index

    def get(self, building_id: str) -> Building | None:
        return self._buildings.get(building_id)

    def replace_all(self, buildings: list[Building]) -> BuildingIndex:
        self._buildings = {b.id: b for b in buildings}
        self.heights.invalidate()
        self._index = BuildingIndex(list(self._buildings.values()), self.heights)
        logger.info("Rebuilt building index with %s buildings", len(self._index))
        return self._index
