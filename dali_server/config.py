"""Per-location payload size configuration."""

import logging
import os
import re
from dataclasses import dataclass
from fractions import Fraction
from typing import Dict, Iterable, List, Optional

from dali_server.errors import ConfigError, ConfigurationUnavailable
from dali_server.planner import Strategy

logger = logging.getLogger("dali-server")

ROOT = "/"
DEFAULT_STRATEGY = Strategy.ZERO

_SIZE_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*(b|k|kb|m|mb|g|gb)?$")
_MULTIPLIERS = {
    None: 1,
    "b": 1,
    "k": 1024,
    "kb": 1024,
    "m": 1024**2,
    "mb": 1024**2,
    "g": 1024**3,
    "gb": 1024**3,
}


def parse_size(s: str) -> Optional[int]:
    """Parse a size string like '500', '10k' or '1.5m' into bytes.

    Returns None unless the value is a whole number of bytes.
    """
    m = _SIZE_PATTERN.match(s.strip().lower())
    if not m:
        return None
    size = Fraction(m.group(1)) * _MULTIPLIERS[m.group(2)]
    if size.denominator != 1:
        return None
    return int(size)


@dataclass(frozen=True)
class SizeConfig:
    """Payload length for one scope; ``None`` means not configured."""

    length: Optional[int] = None

    @property
    def is_set(self) -> bool:
        return self.length is not None


def merge(parent: SizeConfig, child: SizeConfig) -> SizeConfig:
    """Merge an inherited size into a nested scope.

    A nested scope may shrink the inherited budget but never grow it, and an
    unset child inherits the parent unchanged.
    """
    if not child.is_set:
        return parent
    if parent.is_set and 0 < parent.length < child.length:
        return parent
    return child


@dataclass(frozen=True)
class Location:
    """A configured scope, as written by the user."""

    path: str
    size: SizeConfig = SizeConfig()
    strategy: Optional[Strategy] = None


@dataclass(frozen=True)
class ResolvedScope:
    """A scope after merging with all of its ancestors."""

    path: str
    size: SizeConfig
    strategy: Strategy

    @property
    def length(self) -> Optional[int]:
        return self.size.length


def normalize_path(path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1:
        path = path.rstrip("/") or ROOT
    return path


def is_within(scope_path: str, path: str) -> bool:
    """Check if a request path falls under a scope path."""
    if scope_path == ROOT:
        return True
    return path == scope_path or path.startswith(scope_path + "/")


class PayloadConfig:
    """All configured locations, merged once before serving."""

    def __init__(self, locations: Iterable[Location] = ()):
        self._locations: Dict[str, Location] = {}
        self._resolved: Optional[Dict[str, ResolvedScope]] = None
        for location in locations:
            self.add(location)

    @property
    def finalized(self) -> bool:
        return self._resolved is not None

    def __len__(self) -> int:
        return len(self._locations)

    def add(self, location: Location) -> None:
        """Add or update a location. Later values for the same path win field by field."""
        if self.finalized:
            raise ConfigError("Cannot add locations after the configuration is finalized")

        path = normalize_path(location.path)
        existing = self._locations.get(path)
        if existing is not None:
            location = Location(
                path,
                location.size if location.size.is_set else existing.size,
                location.strategy or existing.strategy,
            )
        else:
            location = Location(path, location.size, location.strategy)
        self._locations[path] = location

    def _parent_path(self, path: str) -> Optional[str]:
        """Return the nearest configured ancestor of ``path``."""
        candidates = [p for p in self._locations if p != path and is_within(p, path)]
        return max(candidates, key=len) if candidates else None

    def finalize(self) -> None:
        """Apply the merge rule from the root down. Runs once."""
        if self.finalized:
            return

        resolved: Dict[str, ResolvedScope] = {}
        # Shorter paths first so each parent is resolved before its children
        for path in sorted(self._locations, key=lambda p: (p.count("/") if p != ROOT else 0, len(p))):
            location = self._locations[path]
            parent_path = self._parent_path(path)
            if parent_path is None:
                size = location.size
                strategy = location.strategy or DEFAULT_STRATEGY
            else:
                parent = resolved[parent_path]
                size = merge(parent.size, location.size)
                strategy = location.strategy or parent.strategy
            resolved[path] = ResolvedScope(path, size, strategy)
            logger.debug(f"Scope {path}: length={size.length} strategy={strategy.value}")

        self._resolved = resolved

    def scopes(self) -> List[ResolvedScope]:
        """Return resolved scopes sorted by path."""
        self.finalize()
        return [self._resolved[p] for p in sorted(self._resolved)]

    def resolve(self, path: str) -> ResolvedScope:
        """Find the most specific scope for a request path."""
        self.finalize()
        matches = [p for p in self._resolved if is_within(p, path)]
        if not matches:
            raise ConfigurationUnavailable(f"No location configured for {path}")
        scope = self._resolved[max(matches, key=len)]
        if not scope.size.is_set:
            raise ConfigurationUnavailable(f"No payload size configured for {path} (scope {scope.path})")
        return scope


def parse_location(spec: str) -> Location:
    """Parse a ``PATH=SIZE[:STRATEGY]`` command line value."""
    if "=" not in spec:
        raise ConfigError(f"Invalid location '{spec}'. Use PATH=SIZE[:STRATEGY] (e.g. /small=10k:pattern)")
    path, value = spec.split("=", 1)
    size_str, _, strategy_str = value.partition(":")

    length = parse_size(size_str)
    if length is None:
        raise ConfigError(f"Invalid size '{size_str}' for location {path}")
    strategy = None
    if strategy_str:
        try:
            strategy = Strategy.parse(strategy_str)
        except ValueError as e:
            raise ConfigError(str(e)) from None
    return Location(path.strip() or ROOT, SizeConfig(length), strategy)


def load_config(config_path: str) -> PayloadConfig:
    """Load locations from a config file.

    The format is line oriented::

        # applies to /
        Dali 1m

        Location /small
            Dali 10k
            Strategy pattern
    """
    config = PayloadConfig()
    if not os.path.exists(config_path):
        raise ConfigError(f"Config file not found: {config_path}")

    current = ROOT
    values: Dict[str, Location] = {ROOT: Location(ROOT)}

    with open(config_path, "r") as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            parts = line.split(maxsplit=1)
            if len(parts) < 2:
                raise ConfigError(f"{config_path}:{lineno}: missing value for '{parts[0]}'")

            key, value = parts[0].lower(), parts[1].strip()
            location = values.setdefault(current, Location(current))

            if key == "location":
                current = normalize_path(value)
                values.setdefault(current, Location(current))
            elif key == "dali":
                length = parse_size(value)
                if length is None:
                    raise ConfigError(f"{config_path}:{lineno}: invalid size '{value}'")
                values[current] = Location(current, SizeConfig(length), location.strategy)
            elif key == "strategy":
                try:
                    strategy = Strategy.parse(value)
                except ValueError as e:
                    raise ConfigError(f"{config_path}:{lineno}: {e}") from None
                values[current] = Location(current, location.size, strategy)
            else:
                logger.warning(f"{config_path}:{lineno}: ignoring unknown option '{parts[0]}'")

    for location in values.values():
        if location.path == ROOT and not location.size.is_set and location.strategy is None:
            continue
        config.add(location)

    logger.info(f"Loaded {len(config)} location(s) from {config_path}")
    return config
