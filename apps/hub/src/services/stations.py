from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Tuple


class UnknownLocalityError(KeyError):
    """Raised when a locality name is not present in the station registry."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        supported = ", ".join(sorted(_REGISTRY))
        return f"Unsupported locality '{self.name}'. Supported localities: {supported}"


@dataclass(frozen=True, slots=True)
class Locality:
    """A named place with coordinates and its KMA ASOS station number."""

    name: str
    latitude: float
    longitude: float
    station_id: int
    aliases: Tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"Latitude out of range for {self.name}: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"Longitude out of range for {self.name}: {self.longitude}")

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "lat": self.latitude,
            "lon": self.longitude,
            "stationId": self.station_id,
            "aliases": list(self.aliases),
        }


_REGISTRY: Dict[str, Locality] = {
    locality.name: locality
    for locality in (
        Locality("seoul", 37.5665, 126.9780, 108, ("서울",)),  # Jongno-gu
        Locality("busan", 35.1796, 129.0756, 159, ("부산",)),
        Locality("daegu", 35.8714, 128.6014, 143, ("대구",)),
        Locality("incheon", 37.4563, 126.7052, 112, ("인천",)),
        Locality("gwangju", 35.1595, 126.8526, 156, ("광주",)),
        Locality("daejeon", 36.3504, 127.3845, 133, ("대전",)),
        Locality("ulsan", 35.5384, 129.3114, 152, ("울산",)),
        Locality("sejong", 36.4800, 127.2890, 129, ("세종",)),  # Jochiwon
        Locality("suwon", 37.2636, 127.0286, 119, ("수원",)),
        Locality("changwon", 35.2272, 128.6811, 155, ("창원",)),
        Locality("jeju", 33.4996, 126.5312, 184, ("제주",)),
    )
}

_ALIASES: Dict[str, str] = {
    alias: locality.name for locality in _REGISTRY.values() for alias in locality.aliases
}


def get_locality(name: str) -> Locality:
    key = (name or "").strip()
    locality = _REGISTRY.get(key.lower())
    if locality is None:
        alias = _ALIASES.get(key)
        if alias is not None:
            locality = _REGISTRY[alias]
    if locality is None:
        raise UnknownLocalityError(name)
    return locality


def list_localities() -> List[Locality]:
    return list(_REGISTRY.values())


__all__ = ["Locality", "UnknownLocalityError", "get_locality", "list_localities"]
