import logging
import math
import time
from dataclasses import dataclass
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np


# -----------------
# Constants
# -----------------

MAXINFPTS = 100

TAIL_TEMPERATURE_LIMIT = 34.5
TAIL_DELTA_LOW = -0.2
TAIL_DELTA_HIGH = 0.1

MEDIAN_MAX_HALF_WIDTH = 5

ENVELOPE_TOLERANCE_START = 0.15
ENVELOPE_TOLERANCE_LIMIT = 2.0
ENVELOPE_TOLERANCE_GROWTH = 1.10
ENVELOPE_MIN_DEPTH = 5

INFLECTION_ENGINES = ("acceleration", "envelope")


# -----------------
# Errors
# -----------------

class XBTError(Exception):
    """Base class for errors raised while processing a cast."""


class ConfigurationError(XBTError, ValueError):
    """Invalid coefficients, sampling frequency or unresolved type codes."""


class InputError(XBTError, ValueError):
    """Temperature input that cannot be turned into a series."""


# -----------------
# Data structures
# -----------------

class DepthTemperaturePoint(NamedTuple):
    depth: float
    temperature: float


@dataclass(frozen=True)
class FallRateCoefficients:
    a: float
    b: float

    def __post_init__(self) -> None:
        if not (math.isfinite(self.a) and math.isfinite(self.b)):
            raise ConfigurationError(
                f"Fall-rate coefficients must be finite (a={self.a}, b={self.b})"
            )


class _StageProfiler:
    def __init__(self, enabled: bool) -> None:
        self.enabled = enabled
        self._last = time.perf_counter()

    def lap(self, label: str) -> None:
        if not self.enabled:
            return
        now = time.perf_counter()
        logging.info("Profile %-18s %.3fs", label, now - self._last)
        self._last = now


def _setup_logging(verbose: bool, log_file: Optional[str] = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    datefmt = "%H:%M:%S"
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt)
    if log_file:
        fh = logging.FileHandler(log_file, mode="w")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(fmt, datefmt))
        logging.getLogger().addHandler(fh)


def _check_frequency(sample_frequency: float) -> float:
    try:
        freq = float(sample_frequency)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Sample frequency is not a number: {sample_frequency!r}")
    if not math.isfinite(freq) or freq <= 0:
        raise ConfigurationError(f"Sample frequency must be positive, got {sample_frequency!r}")
    return freq


def _round_tenth(value: float) -> int:
    # Nearest tenth of a degree, halves rounded away from zero.
    return int(math.copysign(math.floor(abs(value) * 10.0 + 0.5), value))


def _truncate_tenth(value: float) -> int:
    return int((value + 0.05) * 10.0)


# -----------------
# Fall-rate model
# -----------------

def depth_at(index: int, coefficients: FallRateCoefficients, sample_frequency: float) -> float:
    """Depth (m) of the sample at ``index`` using the quadratic fall-rate equation.

    Elapsed time is ``(index + 1) / sample_frequency`` so the first sample
    sits one sampling interval below the surface.
    """
    freq = _check_frequency(sample_frequency)
    if index < 0:
        raise ValueError(f"Sample index must be non-negative, got {index}")
    t = (float(index) + 1.0) / freq
    return coefficients.a * t + 0.001 * coefficients.b * t * t


def depths_for(count: int, coefficients: FallRateCoefficients, sample_frequency: float) -> np.ndarray:
    freq = _check_frequency(sample_frequency)
    if count <= 0:
        return np.zeros(0, dtype=np.float64)
    t = (np.arange(count, dtype=np.float64) + 1.0) / freq
    return coefficients.a * t + 0.001 * coefficients.b * t * t


def time_at_depth(depth: float, coefficients: FallRateCoefficients) -> Optional[float]:
    """Invert the fall-rate equation: elapsed time (s) at which ``depth`` is reached.

    Returns the positive root of ``0.001*b*t^2 + a*t - depth = 0`` or None
    when the equation has no real non-negative solution.
    """
    a = 0.001 * coefficients.b
    b = coefficients.a
    c = -float(depth)
    if a == 0.0:
        if b == 0.0:
            return None
        t = -c / b
        return t if t >= 0 else None
    disc = b * b - 4.0 * a * c
    if disc < 0:
        return None
    t = (-b + math.sqrt(disc)) / (2.0 * a)
    return t if t >= 0 else None


# -----------------
# Profile building & resampling
# -----------------

def build_raw_profile(
    temperatures: Sequence[float],
    coefficients: FallRateCoefficients,
    sample_frequency: float,
) -> List[DepthTemperaturePoint]:
    depths = depths_for(len(temperatures), coefficients, sample_frequency)
    return [
        DepthTemperaturePoint(float(d), float(t))
        for d, t in zip(depths, temperatures)
    ]


def _warn_if_not_ascending(depths: np.ndarray) -> None:
    if depths.size < 2:
        return
    steps = np.diff(depths)
    if np.any(steps <= 0):
        idx = int(np.argmax(steps <= 0)) + 1
        logging.warning(
            "Raw depths are not strictly increasing (index %d: %.4f after %.4f); "
            "check the fall-rate coefficients, resampled values are undefined past this point",
            idx,
            float(depths[idx]),
            float(depths[idx - 1]),
        )


def one_meter_profile(raw: Sequence[DepthTemperaturePoint]) -> List[DepthTemperaturePoint]:
    """Linearly interpolate the raw profile onto depths 1, 2, ..., floor(last depth).

    Raw depths are the interpolation knots and must be ascending. Grid
    depths above the first raw depth take the first raw temperature.
    """
    if not raw:
        return []
    last_depth = int(math.floor(raw[-1].depth))
    if last_depth <= 0:
        return []
    knots = np.fromiter((p.depth for p in raw), dtype=np.float64, count=len(raw))
    temps = np.fromiter((p.temperature for p in raw), dtype=np.float64, count=len(raw))
    _warn_if_not_ascending(knots)
    grid = np.arange(1, last_depth + 1, dtype=np.float64)
    values = np.interp(grid, knots, temps)
    return [DepthTemperaturePoint(float(d), float(t)) for d, t in zip(grid, values)]


def two_meter_profile(one_meter: Sequence[DepthTemperaturePoint]) -> List[DepthTemperaturePoint]:
    # Keep the even depths (2, 4, 6, ...), which sit at the odd indices.
    count = len(one_meter) // 2
    return [one_meter[2 * i + 1] for i in range(count)]


# -----------------
# Smoothing & tail detection
# -----------------

def median_window_half_width(index: int, length: int, max_half_width: int = MEDIAN_MAX_HALF_WIDTH) -> int:
    last = length - 1
    for half in range(max_half_width, 1, -1):
        if index - half >= 0 and index + half <= last:
            return half
    return 1


def median_filter(temperatures: Sequence[float]) -> List[float]:
    """Boundary-aware running median over the series with its last sample dropped.

    The final reading is excluded before filtering. Interior indices
    1..m-2 of the remaining m values are smoothed with the widest window
    of half-width 5 down to 1 that fits, so the output has m-2 values.
    """
    series = [float(t) for t in temperatures[:-1]]
    m = len(series)
    smoothed: List[float] = []
    for i in range(1, m - 1):
        half = median_window_half_width(i, m)
        window = sorted(series[i - half:i + half + 1])
        smoothed.append(window[len(window) // 2])
    return smoothed


def trim_tail(smoothed: Sequence[float], limit: float = TAIL_TEMPERATURE_LIMIT) -> List[float]:
    out = list(smoothed)
    while out and out[-1] >= limit:
        out.pop()
    return out


def tail_depth_index(one_meter: Sequence[DepthTemperaturePoint]) -> int:
    """Index in the one-meter profile where the isothermal tail begins.

    Walks upward from the deepest point and stops at the first step whose
    shallower temperature is below the tail limit and whose temperature
    change lies inside the stable band. Returns ``len(one_meter)`` when no
    such step exists.
    """
    for i in range(len(one_meter) - 1, 0, -1):
        t_deep = one_meter[i].temperature
        t_shallow = one_meter[i - 1].temperature
        if t_shallow >= TAIL_TEMPERATURE_LIMIT:
            continue
        delta = t_deep - t_shallow
        if delta <= TAIL_DELTA_LOW or delta >= TAIL_DELTA_HIGH:
            continue
        return i
    return len(one_meter)


# -----------------
# Inflection points
# -----------------

def find_inflection_points(
    raw: Sequence[DepthTemperaturePoint],
    max_points: int = MAXINFPTS,
) -> List[DepthTemperaturePoint]:
    points: List[DepthTemperaturePoint] = []
    accel_prev = 0.0
    for k in range(len(raw) - 2):
        d0, t0 = raw[k]
        d1, t1 = raw[k + 1]
        d2, t2 = raw[k + 2]
        dD0 = d0 - d1
        dD1 = d1 - d2
        dT0 = t0 - t1
        dT1 = t1 - t2
        if dT0 * dT1 == 0:
            continue
        slope0 = dD0 / dT0
        slope1 = dD1 / dT1
        accel = dD0 / (dT0 * dT0) - dD1 / (dT0 * dT1)
        # A negative slope product is a local extremum, not a concavity change.
        if accel * accel_prev < 0 and slope0 * slope1 > 0 and len(points) < max_points:
            points.append(DepthTemperaturePoint(d1, t1))
            if len(points) > 1 and _round_tenth(points[-1].temperature) == _round_tenth(points[-2].temperature):
                points.pop()
        accel_prev = accel
    logging.debug("Acceleration detector: %d inflection points from %d samples", len(points), len(raw))
    return points


def smoothed_temperature_at_depth(
    depth: float,
    smoothed: Sequence[float],
    coefficients: FallRateCoefficients,
    sample_frequency: float,
) -> Optional[float]:
    """Smoothed temperature at ``depth``, blended between neighbouring smoothed samples.

    The depth is mapped back to elapsed time through the fall-rate equation
    and then to a fractional sample position ``t * sample_frequency``.
    """
    if depth < 1:
        return None
    t = time_at_depth(depth, coefficients)
    if t is None:
        return None
    position = t * _check_frequency(sample_frequency)
    frac, whole = math.modf(position)
    pos = int(whole)
    if pos < 1 or pos > len(smoothed) - 1:
        return None
    below = smoothed[pos - 1]
    above = smoothed[pos]
    return below + (above - below) * frac


def _dedupe_envelope_points(points: List[DepthTemperaturePoint]) -> List[DepthTemperaturePoint]:
    out = list(points)
    i = 0
    while i < len(out) - 1:
        if out[i].depth == out[i + 1].depth:
            del out[i + 1]
        else:
            i += 1
    i = 0
    while i + 2 < len(out):
        while i + 2 < len(out):
            first = _truncate_tenth(out[i].temperature)
            second = _truncate_tenth(out[i + 1].temperature)
            third = _truncate_tenth(out[i + 2].temperature)
            if first == second == third:
                del out[i + 1]
            else:
                break
        i += 1
    return out


def _envelope_pass(
    lookup,
    tail_index: int,
    tolerance: float,
) -> List[DepthTemperaturePoint]:
    points: List[DepthTemperaturePoint] = []
    t1 = lookup(2)
    t2 = lookup(3)
    if t1 is None or t2 is None:
        return points
    d1 = 2.0
    points.append(DepthTemperaturePoint(d1, t1))
    delta_t = t2 - t1
    delta_d = 3.0 - d1
    lsr = (delta_t + tolerance) / delta_d
    lsl = (delta_t - tolerance) / delta_d
    new_limits = False
    for depth in range(4, tail_index):
        if d1 > tail_index:
            break
        t2 = lookup(depth)
        if t2 is None:
            break
        d2 = float(depth)
        n_delta_t = t2 - t1
        n_delta_d = d2 - d1
        if new_limits:
            lsr = (n_delta_t + tolerance) / n_delta_d
            lsl = (n_delta_t - tolerance) / n_delta_d
            new_limits = False
        slope = n_delta_t / n_delta_d
        if slope > lsr or slope < lsl:
            t1 = t2
            d1 = d2
            points.append(DepthTemperaturePoint(d1, t1))
            new_limits = True
            continue
        lsr = min(lsr, (n_delta_t + tolerance) / n_delta_d)
        lsl = max(lsl, (n_delta_t - tolerance) / n_delta_d)
    return points


def find_envelope_inflection_points(
    raw: Sequence[DepthTemperaturePoint],
    coefficients: FallRateCoefficients,
    sample_frequency: float,
    max_points: int = MAXINFPTS,
) -> List[DepthTemperaturePoint]:
    """Slope-envelope inflection detector kept for output matching with older tools.

    Works on the median-smoothed series at whole-metre depths between 2 m
    and the tail depth. The tolerance band widens by 10% per attempt
    until the point count fits under ``max_points``.
    """
    if not raw or int(math.floor(raw[-1].depth)) < ENVELOPE_MIN_DEPTH:
        return []
    smoothed = trim_tail(median_filter([p.temperature for p in raw]))
    tail_index = tail_depth_index(one_meter_profile(raw))

    def lookup(depth: float) -> Optional[float]:
        return smoothed_temperature_at_depth(depth, smoothed, coefficients, sample_frequency)

    tolerance = ENVELOPE_TOLERANCE_START
    points: List[DepthTemperaturePoint] = []
    while tolerance < ENVELOPE_TOLERANCE_LIMIT:
        points = _envelope_pass(lookup, tail_index, tolerance)
        if len(points) < max_points:
            tail_temp = lookup(tail_index)
            if tail_temp is not None:
                points.append(DepthTemperaturePoint(float(tail_index), tail_temp))
            points = _dedupe_envelope_points(points)
            logging.debug(
                "Envelope detector: %d inflection points at tolerance %.3f (tail index %d)",
                len(points),
                tolerance,
                tail_index,
            )
            return points
        tolerance *= ENVELOPE_TOLERANCE_GROWTH
    logging.warning(
        "Envelope detector could not fit under %d points before tolerance reached %.2f",
        max_points,
        ENVELOPE_TOLERANCE_LIMIT,
    )
    return points


# -----------------
# Cast facade
# -----------------

class DepthCalculator:
    """Depth-referenced views of a single XBT cast.

    Holds an immutable copy of the temperature series together with the
    fall-rate coefficients and the recorder sampling frequency. Every query
    is recomputed from those values, so one instance can be read from
    several threads at once.
    """

    def __init__(
        self,
        temperatures: Iterable[float],
        coefficients: FallRateCoefficients,
        sample_frequency: float,
        max_inflection_points: int = MAXINFPTS,
    ) -> None:
        if max_inflection_points < 0:
            raise ConfigurationError(
                f"max_inflection_points must be non-negative, got {max_inflection_points}"
            )
        self._temperatures: Tuple[float, ...] = tuple(float(t) for t in temperatures)
        self._coefficients = coefficients
        self._sample_frequency = _check_frequency(sample_frequency)
        self._max_inflection_points = int(max_inflection_points)

    @classmethod
    def from_type_codes(
        cls,
        temperatures: Iterable[float],
        recorder_type: int,
        probe_type: int,
        table=None,
        max_inflection_points: int = MAXINFPTS,
    ) -> "DepthCalculator":
        from xbt_tables import resolve_coefficients, resolve_sample_frequency

        return cls(
            temperatures,
            resolve_coefficients(probe_type, table=table),
            resolve_sample_frequency(recorder_type, table=table),
            max_inflection_points=max_inflection_points,
        )

    @property
    def temperatures(self) -> Tuple[float, ...]:
        return self._temperatures

    @property
    def coefficients(self) -> FallRateCoefficients:
        return self._coefficients

    @property
    def sample_frequency(self) -> float:
        return self._sample_frequency

    @property
    def max_inflection_points(self) -> int:
        return self._max_inflection_points

    def __len__(self) -> int:
        return len(self._temperatures)

    def depth_at(self, index: int) -> float:
        return depth_at(index, self._coefficients, self._sample_frequency)

    def all_depths(self) -> List[float]:
        return [float(d) for d in depths_for(len(self._temperatures), self._coefficients, self._sample_frequency)]

    def raw_profile(self) -> List[DepthTemperaturePoint]:
        return build_raw_profile(self._temperatures, self._coefficients, self._sample_frequency)

    def one_meter_profile(self) -> List[DepthTemperaturePoint]:
        return one_meter_profile(self.raw_profile())

    def two_meter_profile(self) -> List[DepthTemperaturePoint]:
        return two_meter_profile(self.one_meter_profile())

    def smoothed_temperatures(self) -> List[float]:
        return trim_tail(median_filter(self._temperatures))

    def tail_depth_index(self) -> int:
        return tail_depth_index(self.one_meter_profile())

    def inflection_points(self, engine: str = "acceleration") -> List[DepthTemperaturePoint]:
        if engine == "acceleration":
            return find_inflection_points(self.raw_profile(), max_points=self._max_inflection_points)
        if engine == "envelope":
            return find_envelope_inflection_points(
                self.raw_profile(),
                self._coefficients,
                self._sample_frequency,
                max_points=self._max_inflection_points,
            )
        raise ConfigurationError(
            f"Unknown inflection engine '{engine}'; expected one of {', '.join(INFLECTION_ENGINES)}"
        )
