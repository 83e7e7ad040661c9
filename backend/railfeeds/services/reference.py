"""Location reference lookup across STANOX, CRS and TIPLOC codes.

The index is loaded wholesale and never patched: ``load`` builds fresh
dictionaries and swaps them in one assignment, so concurrent readers always see
either the previous table or the new one.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from railfeeds.services.rail_dto import Location

logger = logging.getLogger(__name__)


def _normalize(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip().upper()
    return value or None


@dataclass(frozen=True)
class _Tables:
    locations: tuple[Location, ...] = ()
    by_stanox: dict[str, Location] = field(default_factory=dict)
    by_crs: dict[str, Location] = field(default_factory=dict)
    by_tiploc: dict[str, Location] = field(default_factory=dict)
    stanox_by_crs: dict[str, tuple[str, ...]] = field(default_factory=dict)
    tiplocs_by_crs: dict[str, tuple[str, ...]] = field(default_factory=dict)


class LocationIndex:
    """Bidirectional, O(1) lookups between the three location coding schemes."""

    def __init__(self, locations: Iterable[Location] | None = None) -> None:
        self._tables = _Tables()
        if locations is not None:
            self.load(locations)

    def load(self, locations: Iterable[Location]) -> int:
        """Replace the whole table. Returns the number of locations loaded."""
        rows: list[Location] = []
        by_stanox: dict[str, Location] = {}
        by_crs: dict[str, Location] = {}
        by_tiploc: dict[str, Location] = {}
        stanox_by_crs: dict[str, list[str]] = {}
        tiplocs_by_crs: dict[str, list[str]] = {}

        for location in locations:
            stanox = _normalize(location.stanox)
            crs = _normalize(location.crs)
            tiploc = _normalize(location.tiploc)
            if not (stanox or crs or tiploc):
                continue
            location = Location(
                name=location.name.strip() if location.name else (tiploc or stanox or crs),
                stanox=stanox,
                crs=crs,
                tiploc=tiploc,
            )
            rows.append(location)

            # First row wins for the one-to-one views; CRS keeps every mapping.
            if stanox:
                by_stanox.setdefault(stanox, location)
            if tiploc:
                by_tiploc.setdefault(tiploc, location)
            if crs:
                by_crs.setdefault(crs, location)
                if stanox and stanox not in stanox_by_crs.setdefault(crs, []):
                    stanox_by_crs[crs].append(stanox)
                if tiploc and tiploc not in tiplocs_by_crs.setdefault(crs, []):
                    tiplocs_by_crs[crs].append(tiploc)

        self._tables = _Tables(
            locations=tuple(rows),
            by_stanox=by_stanox,
            by_crs=by_crs,
            by_tiploc=by_tiploc,
            stanox_by_crs={k: tuple(v) for k, v in stanox_by_crs.items()},
            tiplocs_by_crs={k: tuple(v) for k, v in tiplocs_by_crs.items()},
        )
        logger.info(
            "Location index loaded: %d locations, %d stations",
            len(rows),
            len(by_crs),
        )
        return len(rows)

    def __len__(self) -> int:
        return len(self._tables.locations)

    @property
    def loaded(self) -> bool:
        return bool(self._tables.locations)

    def by_stanox(self, stanox: str | None) -> Location | None:
        key = _normalize(stanox)
        return self._tables.by_stanox.get(key) if key else None

    def by_crs(self, crs: str | None) -> Location | None:
        key = _normalize(crs)
        return self._tables.by_crs.get(key) if key else None

    def by_tiploc(self, tiploc: str | None) -> Location | None:
        key = _normalize(tiploc)
        return self._tables.by_tiploc.get(key) if key else None

    def stanox_for_crs(self, crs: str | None) -> tuple[str, ...]:
        key = _normalize(crs)
        return self._tables.stanox_by_crs.get(key, ()) if key else ()

    def tiplocs_for_crs(self, crs: str | None) -> tuple[str, ...]:
        key = _normalize(crs)
        return self._tables.tiplocs_by_crs.get(key, ()) if key else ()

    def crs_for_tiploc(self, tiploc: str | None) -> str | None:
        location = self.by_tiploc(tiploc)
        return location.crs if location else None

    def passenger_stations(self) -> list[Location]:
        """Locations that carry a public CRS code, one per code."""
        return sorted(self._tables.by_crs.values(), key=lambda loc: loc.name)

    def search(self, query: str, limit: int = 20) -> list[Location]:
        """Rank stations by exact name, then prefix, then substring match.

        An exact CRS code match always ranks first.
        """
        needle = query.strip().lower()
        if not needle or limit <= 0:
            return []

        ranked: list[tuple[int, str, Location]] = []
        for location in self._tables.by_crs.values():
            name = location.name.lower()
            if location.crs and location.crs.lower() == needle:
                rank = 0
            elif name == needle:
                rank = 1
            elif name.startswith(needle):
                rank = 2
            elif needle in name:
                rank = 3
            else:
                continue
            ranked.append((rank, name, location))

        ranked.sort(key=lambda item: (item[0], item[1]))
        return [location for _, _, location in ranked[:limit]]


__all__ = ["LocationIndex"]
