"""Depot caching policy and the loader for its TOML source."""

from __future__ import annotations

import re
import tomllib
from bisect import bisect_left
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Iterable

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError


LOGGER = structlog.get_logger("lancache.policy")

MAX_DEPOT_ID = 2**32 - 1
_DEPOT_PATTERN = re.compile(r"[0-9]+")


class PolicyError(Exception):
    """Raised when the policy file cannot be read, decoded or validated."""


class SteamSection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    depots: list[Annotated[int, Field(ge=0, le=MAX_DEPOT_ID)]] = Field(default_factory=list)
    cache_all: bool = False


class PolicyDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    steam: SteamSection = Field(default_factory=SteamSection)


def parse_depot_id(depot: str) -> int | None:
    """Parse a depot key from the URL; ``None`` when it is not an unsigned 32-bit decimal."""

    if not _DEPOT_PATTERN.fullmatch(depot):
        return None
    value = int(depot)
    if value > MAX_DEPOT_ID:
        return None
    return value


@dataclass(frozen=True)
class DepotPolicy:
    """Immutable set of cacheable depots.

    ``depots`` is kept sorted and free of duplicates so membership is a
    binary search. Configured sets are small (tens to a few hundred ids);
    operators caching more than that should turn on ``cache_all``.
    """

    depots: tuple[int, ...] = ()
    cache_all: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "depots", tuple(sorted(set(self.depots))))

    @classmethod
    def from_ids(cls, depots: Iterable[int], cache_all: bool = False) -> "DepotPolicy":
        return cls(depots=tuple(depots), cache_all=cache_all)

    def has_depot(self, depot: str) -> bool:
        depot_id = parse_depot_id(depot)
        if depot_id is None:
            LOGGER.error("could not parse depot id", depot=depot)
            return False
        index = bisect_left(self.depots, depot_id)
        return index < len(self.depots) and self.depots[index] == depot_id

    def should_cache(self, depot: str, bypass: bool = False) -> bool:
        if bypass:
            return False
        if self.cache_all:
            return True
        return self.has_depot(depot)


def load_policy(path: Path) -> DepotPolicy:
    try:
        with Path(path).open("rb") as handle:
            raw = tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise PolicyError(f"while decoding config {path}: {exc}") from exc

    try:
        document = PolicyDocument.model_validate(raw)
    except ValidationError as exc:
        raise PolicyError(f"invalid config {path}: {exc}") from exc

    policy = DepotPolicy.from_ids(document.steam.depots, cache_all=document.steam.cache_all)
    if policy.cache_all:
        LOGGER.info("caching all depots")
    else:
        LOGGER.info("caching depots", depots=list(policy.depots))
    return policy
