from __future__ import annotations

# Probe and recorder lookup tables. Coefficients follow the WMO fall-rate
# code table (1770): Sippican/TSK manufacturer values and the Hanawa et al.
# (1995) revision for T-4, T-6, T-7 and Deep Blue probes.

import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

from xbt_depth import ConfigurationError, FallRateCoefficients


class ProbeType(NamedTuple):
    code: int
    name: str
    a: float
    b: float


class RecorderType(NamedTuple):
    code: int
    name: str
    frequency_hz: float


DEFAULT_PROBES: List[ProbeType] = [
    ProbeType(1, "Sippican T-4", 6.472, -2.16),
    ProbeType(2, "Sippican T-4 (Hanawa)", 6.691, -2.25),
    ProbeType(11, "Sippican T-5", 6.828, -1.82),
    ProbeType(21, "Sippican Fast Deep", 6.346, -1.82),
    ProbeType(31, "Sippican T-6", 6.472, -2.16),
    ProbeType(32, "Sippican T-6 (Hanawa)", 6.691, -2.25),
    ProbeType(41, "Sippican T-7", 6.472, -2.16),
    ProbeType(42, "Sippican T-7 (Hanawa)", 6.691, -2.25),
    ProbeType(51, "Sippican Deep Blue", 6.472, -2.16),
    ProbeType(52, "Sippican Deep Blue (Hanawa)", 6.691, -2.25),
    ProbeType(61, "Sippican T-10", 6.301, -2.16),
    ProbeType(71, "Sippican T-11", 1.779, -0.255),
]

DEFAULT_RECORDERS: List[RecorderType] = [
    RecorderType(3, "Sippican MK-9", 10.0),
    RecorderType(5, "Sippican MK-12", 10.0),
    RecorderType(6, "Sippican MK-21", 10.0),
]


@dataclass(frozen=True)
class FallRateTable:
    probes: Dict[int, ProbeType] = field(default_factory=dict)
    recorders: Dict[int, RecorderType] = field(default_factory=dict)

    @classmethod
    def from_entries(cls, probes: Iterable[ProbeType], recorders: Iterable[RecorderType]) -> "FallRateTable":
        return cls(
            probes={p.code: p for p in probes},
            recorders={r.code: r for r in recorders},
        )

    def merged(self, other: "FallRateTable") -> "FallRateTable":
        """Return a new table where entries from ``other`` replace ours by code."""
        probes = dict(self.probes)
        probes.update(other.probes)
        recorders = dict(self.recorders)
        recorders.update(other.recorders)
        return FallRateTable(probes=probes, recorders=recorders)


DEFAULT_TABLE = FallRateTable.from_entries(DEFAULT_PROBES, DEFAULT_RECORDERS)


def resolve_coefficients(probe_type: int, table: Optional[FallRateTable] = None) -> FallRateCoefficients:
    tbl = table if table is not None else DEFAULT_TABLE
    probe = tbl.probes.get(int(probe_type))
    if probe is None:
        known = ", ".join(str(c) for c in sorted(tbl.probes))
        raise ConfigurationError(f"Unknown probe type {probe_type} (known: {known})")
    return FallRateCoefficients(probe.a, probe.b)


def resolve_sample_frequency(recorder_type: int, table: Optional[FallRateTable] = None) -> float:
    tbl = table if table is not None else DEFAULT_TABLE
    recorder = tbl.recorders.get(int(recorder_type))
    if recorder is None:
        known = ", ".join(str(c) for c in sorted(tbl.recorders))
        raise ConfigurationError(f"Unknown recorder type {recorder_type} (known: {known})")
    if not math.isfinite(recorder.frequency_hz) or recorder.frequency_hz <= 0:
        raise ConfigurationError(
            f"Recorder type {recorder_type} has invalid frequency {recorder.frequency_hz}"
        )
    return float(recorder.frequency_hz)


def _as_float(entry: Dict[str, Any], key: str, where: str) -> float:
    try:
        value = float(entry[key])
    except KeyError:
        raise ConfigurationError(f"{where}: missing '{key}'")
    except (TypeError, ValueError):
        raise ConfigurationError(f"{where}: '{key}' is not a number ({entry[key]!r})")
    if not math.isfinite(value):
        raise ConfigurationError(f"{where}: '{key}' must be finite")
    return value


def _as_code(entry: Dict[str, Any], where: str) -> int:
    try:
        return int(entry["code"])
    except KeyError:
        raise ConfigurationError(f"{where}: missing 'code'")
    except (TypeError, ValueError):
        raise ConfigurationError(f"{where}: 'code' is not an integer ({entry['code']!r})")


def parse_table(data: Dict[str, Any]) -> FallRateTable:
    """Build a table from ``{"probes": [...], "recorders": [...]}``.

    Probe entries need ``code``, ``a`` and ``b``; recorder entries need
    ``code`` and ``frequency_hz``. ``name`` is optional for both.
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Table override must be a JSON object")
    probes: List[ProbeType] = []
    for idx, entry in enumerate(data.get("probes") or []):
        where = f"probes[{idx}]"
        if not isinstance(entry, dict):
            raise ConfigurationError(f"{where}: expected an object")
        code = _as_code(entry, where)
        probes.append(
            ProbeType(code, str(entry.get("name", f"probe {code}")), _as_float(entry, "a", where), _as_float(entry, "b", where))
        )
    recorders: List[RecorderType] = []
    for idx, entry in enumerate(data.get("recorders") or []):
        where = f"recorders[{idx}]"
        if not isinstance(entry, dict):
            raise ConfigurationError(f"{where}: expected an object")
        code = _as_code(entry, where)
        freq = _as_float(entry, "frequency_hz", where)
        if freq <= 0:
            raise ConfigurationError(f"{where}: 'frequency_hz' must be positive")
        recorders.append(RecorderType(code, str(entry.get("name", f"recorder {code}")), freq))
    return FallRateTable.from_entries(probes, recorders)


def load_table_overrides(path: str, base: Optional[FallRateTable] = None) -> FallRateTable:
    p = Path(path).expanduser()
    try:
        with open(p, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON in {p}: {exc}")
    overrides = parse_table(data)
    logging.debug(
        "Loaded %d probe and %d recorder overrides from %s",
        len(overrides.probes),
        len(overrides.recorders),
        p,
    )
    return (base if base is not None else DEFAULT_TABLE).merged(overrides)
