"""Collections: named groups of tests registered from declarative entries.

    def register(collection, entry):
        collection.register_test(entry["name"], http_probe(entry["url"])).set_interval(entry["interval"])

    server.register_collection("Server Pings", register).add({...}).add({...})
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml

from .engine import Clock, ConfigurationError, IdGenerator, Probe, Test, validate_registration

logger = logging.getLogger(__name__)

RegistrationCallback = Callable[["Collection", Any], Any]


class Collection:
    """A named group of tests; owns its tests exclusively."""

    def __init__(
        self,
        name: str,
        callback: RegistrationCallback,
        *,
        options: Mapping[str, Any] | None = None,
        ids: IdGenerator | None = None,
        clock: Clock | None = None,
    ) -> None:
        validate_registration(name, callback, what="Registration callback")
        self.name = name
        self.callback = callback
        self.tests: list[Test] = []
        self.options: dict[str, Any] = dict(options or {})
        self._ids = ids or IdGenerator()
        self._clock = clock

    def __repr__(self) -> str:
        return f"<Collection name={self.name!r} tests={len(self.tests)}>"

    @property
    def interval(self) -> float | None:
        return self.options.get("interval")

    def register_test(self, name: str, probe: Probe) -> Test:
        """Create a test owned by this collection and return it for configuration."""
        test = Test(self._ids.next_id(), name, probe, collection=self, clock=self._clock)
        self.tests.append(test)
        logger.debug("Registered test %s (%s) in collection %s", test.id, name, self.name)
        return test

    def add(self, entry: Any = None) -> Collection:
        """Run the registration callback once for ``entry``."""
        self.callback(self, entry)
        return self

    def add_all(self, entries: Iterable[Any]) -> Collection:
        for entry in entries:
            self.add(entry)
        return self

    def load(self, path: Path | str, key: str = "entries") -> Collection:
        """Add every entry listed in a YAML file.

        The file holds either a top-level list or a mapping with the list
        under ``key``.
        """
        path = Path(path)
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load collection entries from {path}: {e}") from e

        if isinstance(raw, Mapping):
            raw = raw.get(key)
        if raw is None:
            logger.warning("No entries found in %s", path)
            return self
        if not isinstance(raw, list):
            raise ConfigurationError(f"Expected a list of entries in {path}, got {type(raw).__name__}")

        self.add_all(raw)
        logger.info("Loaded %d entries into collection %s from %s", len(raw), self.name, path)
        return self
