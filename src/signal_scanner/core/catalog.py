"""
Instrument catalog: the tracked ETF set and the scan universe, loaded from
the packaged catalog.yaml (or any YAML file with the same shape).
"""
from __future__ import annotations

from importlib import resources
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import yaml

from signal_scanner.core.models import InstrumentMetadata, ScanMode


def _dedupe(items: Iterable[InstrumentMetadata]) -> List[InstrumentMetadata]:
    seen = set()
    out = []
    for item in items:
        if item.symbol in seen:
            continue
        seen.add(item.symbol)
        out.append(item)
    return out


class Catalog:
    def __init__(
        self,
        tracked: Iterable[InstrumentMetadata],
        universe: Iterable[InstrumentMetadata],
        mode_sizes: Optional[Dict[ScanMode, Optional[int]]] = None,
    ) -> None:
        self.tracked = _dedupe(tracked)
        self.universe = _dedupe(universe)
        self.mode_sizes = mode_sizes or {ScanMode.SMALL: 20, ScanMode.MEDIUM: 50, ScanMode.FULL: None}
        self._by_symbol = {}
        for m in self.tracked + self.universe:
            self._by_symbol.setdefault(m.symbol, m)
            self._by_symbol.setdefault(m.provider_symbol, m)

    @classmethod
    def from_dict(cls, raw: Dict) -> "Catalog":
        tracked = [InstrumentMetadata.model_validate(r) for r in raw.get("tracked") or []]
        universe = []
        for r in raw.get("universe") or []:
            r = dict(r)
            r.setdefault("description", f"{r['name']}: {r.get('category', '')}")
            universe.append(InstrumentMetadata.model_validate(r))
        modes = {ScanMode(k): v for k, v in (raw.get("modes") or {}).items()}
        return cls(tracked, universe, modes or None)

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "Catalog":
        if path is None:
            text = resources.files("signal_scanner").joinpath("data/catalog.yaml").read_text(encoding="utf-8")
        else:
            text = Path(path).read_text(encoding="utf-8")
        return cls.from_dict(yaml.safe_load(text) or {})

    def scan_universe(self, mode: ScanMode) -> List[InstrumentMetadata]:
        """Symbols covered by ``mode``. Full scans also pick up tracked ETFs missing from the universe."""
        mode = ScanMode(mode)
        size = self.mode_sizes.get(mode)
        pool = _dedupe(self.universe + self.tracked) if mode is ScanMode.FULL else list(self.universe)
        return pool if size is None else pool[:size]

    def get(self, symbol: str) -> Optional[InstrumentMetadata]:
        """Look up by display or provider symbol."""
        return self._by_symbol.get(symbol)
