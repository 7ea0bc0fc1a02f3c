from __future__ import annotations

# CLI orchestration for the XBT depth calculator. The numeric work lives in
# xbt_depth (core) and xbt_tables (probe/recorder lookups).

import csv
import json
import logging
import math
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from xbt_depth import (
    INFLECTION_ENGINES,
    MAXINFPTS,
    ConfigurationError,
    DepthCalculator,
    DepthTemperaturePoint,
    FallRateCoefficients,
    InputError,
    XBTError,
    _setup_logging,
    _StageProfiler,
)
from xbt_tables import (
    DEFAULT_TABLE,
    FallRateTable,
    load_table_overrides,
    resolve_coefficients,
    resolve_sample_frequency,
)


RESOLUTIONS = ("raw", "1m", "2m", "smoothed")


def _load_temperatures(path_str: str) -> List[float]:
    path = Path(path_str).expanduser()
    try:
        data = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise InputError(f"Cannot read temperatures from {path}: {exc}")
    temps: List[float] = []
    for lineno, line in enumerate(data.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        # First column only; commas and whitespace both separate columns.
        token = stripped.replace(",", " ").split()[0]
        try:
            value = float(token)
        except ValueError:
            raise InputError(f"{path}:{lineno}: not a temperature: {token!r}")
        if not math.isfinite(value):
            raise InputError(f"{path}:{lineno}: temperature must be finite")
        temps.append(value)
    return temps


def _resolve_table(tables_path: Optional[str]) -> FallRateTable:
    if tables_path:
        return load_table_overrides(tables_path)
    return DEFAULT_TABLE


def _build_calculator(
    input_path: str,
    probe_type: Optional[int],
    recorder_type: Optional[int],
    coef_a: Optional[float],
    coef_b: Optional[float],
    frequency: Optional[float],
    tables_path: Optional[str],
    max_points: int = MAXINFPTS,
) -> DepthCalculator:
    table = _resolve_table(tables_path)
    if coef_a is not None and coef_b is not None:
        coefficients = FallRateCoefficients(coef_a, coef_b)
    elif coef_a is not None or coef_b is not None:
        raise ConfigurationError("--coef-a and --coef-b must be given together")
    elif probe_type is not None:
        coefficients = resolve_coefficients(probe_type, table=table)
    else:
        raise ConfigurationError("Provide --probe-type or both --coef-a and --coef-b")

    if frequency is not None:
        sample_frequency = frequency
    elif recorder_type is not None:
        sample_frequency = resolve_sample_frequency(recorder_type, table=table)
    else:
        raise ConfigurationError("Provide --recorder-type or --frequency")

    temps = _load_temperatures(input_path)
    logging.info(
        "Loaded %d samples from %s (a=%.4f, b=%.4f, f=%.2f Hz)",
        len(temps),
        input_path,
        coefficients.a,
        coefficients.b,
        sample_frequency,
    )
    return DepthCalculator(temps, coefficients, sample_frequency, max_inflection_points=max_points)


def _write_points_csv(output: str, points: List[DepthTemperaturePoint]) -> None:
    with open(output, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["depth_m", "temperature_c"])
        writer.writerows([[round(p.depth, 4), round(p.temperature, 4)] for p in points])
    logging.info("Wrote: %s", output)


def _write_json_sidecar(output: str, meta: Dict[str, Any], points: List[DepthTemperaturePoint]) -> None:
    json_path = output[:-4] + ".json" if output.lower().endswith(".csv") else output + ".json"
    try:
        data = [{"depth_m": p.depth, "temperature_c": p.temperature} for p in points]
        with open(json_path, "w", encoding="utf-8") as jf:
            json.dump({"meta": meta, "points": data}, jf, indent=2)
        logging.info("Wrote JSON: %s", json_path)
    except OSError as exc:
        logging.warning("Failed to write JSON sidecar: %s", exc)


def _cast_meta(calc: DepthCalculator, command: str, input_path: str, output: str) -> Dict[str, Any]:
    return {
        "command": command,
        "input": input_path,
        "output_csv": output,
        "n_samples": len(calc),
        "coefficients": {"a": calc.coefficients.a, "b": calc.coefficients.b},
        "sample_frequency_hz": calc.sample_frequency,
        "max_depth_m": calc.depth_at(len(calc) - 1) if len(calc) else 0.0,
    }


def _run_profile(
    input_path: str,
    output: str,
    resolution: str,
    probe_type: Optional[int],
    recorder_type: Optional[int],
    coef_a: Optional[float],
    coef_b: Optional[float],
    frequency: Optional[float],
    tables_path: Optional[str],
    verbose: bool,
    log_file: Optional[str] = None,
    json_sidecar: bool = False,
    profile: bool = False,
) -> int:
    _setup_logging(verbose, log_file=log_file)
    profiler = _StageProfiler(profile)
    if resolution not in RESOLUTIONS:
        logging.error("Unknown resolution '%s'; expected one of %s", resolution, ", ".join(RESOLUTIONS))
        return 2
    try:
        calc = _build_calculator(
            input_path, probe_type, recorder_type, coef_a, coef_b, frequency, tables_path
        )
    except (XBTError, OSError) as e:
        logging.error(str(e))
        return 2
    profiler.lap("load")

    if resolution == "raw":
        points = calc.raw_profile()
    elif resolution == "1m":
        points = calc.one_meter_profile()
    elif resolution == "2m":
        points = calc.two_meter_profile()
    else:
        # Smoothed values are indexed by raw sample, starting at the second one.
        depths = calc.all_depths()
        points = [
            DepthTemperaturePoint(depths[i + 1], t)
            for i, t in enumerate(calc.smoothed_temperatures())
        ]
    profiler.lap("resample")
    if not points:
        logging.warning("No %s points produced from %d samples", resolution, len(calc))

    try:
        _write_points_csv(output, points)
    except OSError as exc:
        logging.error(f"Failed to write profile: {exc}")
        return 2
    profiler.lap("csv")

    if json_sidecar:
        meta = _cast_meta(calc, "profile", input_path, output)
        meta["resolution"] = resolution
        _write_json_sidecar(output, meta, points)
    return 0


def _run_inflections(
    input_path: str,
    output: str,
    engine: str,
    max_points: int,
    probe_type: Optional[int],
    recorder_type: Optional[int],
    coef_a: Optional[float],
    coef_b: Optional[float],
    frequency: Optional[float],
    tables_path: Optional[str],
    verbose: bool,
    log_file: Optional[str] = None,
    json_sidecar: bool = False,
    profile: bool = False,
) -> int:
    _setup_logging(verbose, log_file=log_file)
    profiler = _StageProfiler(profile)
    try:
        calc = _build_calculator(
            input_path,
            probe_type,
            recorder_type,
            coef_a,
            coef_b,
            frequency,
            tables_path,
            max_points=max_points,
        )
        points = calc.inflection_points(engine=engine)
    except (XBTError, OSError) as e:
        logging.error(str(e))
        return 2
    profiler.lap("inflections")
    logging.info("Found %d inflection points (engine=%s)", len(points), engine)

    try:
        _write_points_csv(output, points)
    except OSError as exc:
        logging.error(f"Failed to write inflection points: {exc}")
        return 2
    profiler.lap("csv")

    if json_sidecar:
        meta = _cast_meta(calc, "inflections", input_path, output)
        meta["engine"] = engine
        meta["max_points"] = max_points
        _write_json_sidecar(output, meta, points)
    return 0


def _build_typer_app():  # pragma: no cover
    app = typer.Typer(add_completion=False, help="Depth profiles and inflection points from XBT temperature casts.")

    probe_opt = typer.Option(None, "--probe-type", "-p", help="Probe type code (see `types`)")
    recorder_opt = typer.Option(None, "--recorder-type", "-r", help="Recorder type code (see `types`)")
    coef_a_opt = typer.Option(None, "--coef-a", help="Fall-rate coefficient A (overrides --probe-type)")
    coef_b_opt = typer.Option(None, "--coef-b", help="Fall-rate coefficient B (overrides --probe-type)")
    freq_opt = typer.Option(None, "--frequency", help="Sampling frequency in Hz (overrides --recorder-type)")
    tables_opt = typer.Option(None, "--tables", help="JSON file with extra or replacement probe/recorder entries")
    verbose_opt = typer.Option(False, "--verbose", "-v", help="Verbose logging")
    log_file_opt = typer.Option(None, "--log-file", help="Optional log file path for diagnostics")
    json_opt = typer.Option(False, "--json/--no-json", help="Write JSON report (full precision) next to the CSV")
    profile_opt = typer.Option(False, "--profile/--no-profile", help="Log stage timings")

    @app.command()
    def profile(
        input_path: str = typer.Argument(..., help="Text/CSV file with one temperature per line"),
        output: str = typer.Option("profile.csv", "--output", "-o", help="Output CSV path"),
        resolution: str = typer.Option("1m", "--resolution", help="Profile to write: raw|1m|2m|smoothed"),
        probe_type: Optional[int] = probe_opt,
        recorder_type: Optional[int] = recorder_opt,
        coef_a: Optional[float] = coef_a_opt,
        coef_b: Optional[float] = coef_b_opt,
        frequency: Optional[float] = freq_opt,
        tables: Optional[str] = tables_opt,
        verbose: bool = verbose_opt,
        log_file: Optional[str] = log_file_opt,
        json_sidecar: bool = json_opt,
        profile_stages: bool = profile_opt,
    ) -> None:
        """Write a depth-temperature profile to CSV.

        CSV values are rounded to 4 decimals; --json writes full precision.
        """
        code = _run_profile(
            input_path,
            output,
            resolution,
            probe_type,
            recorder_type,
            coef_a,
            coef_b,
            frequency,
            tables,
            verbose,
            log_file=log_file,
            json_sidecar=json_sidecar,
            profile=profile_stages,
        )
        if code != 0:
            raise typer.Exit(code)

    @app.command()
    def inflections(
        input_path: str = typer.Argument(..., help="Text/CSV file with one temperature per line"),
        output: str = typer.Option("inflections.csv", "--output", "-o", help="Output CSV path"),
        engine: str = typer.Option("acceleration", "--engine", help="Detector: acceleration|envelope"),
        max_points: int = typer.Option(MAXINFPTS, "--max-points", help="Maximum number of inflection points"),
        probe_type: Optional[int] = probe_opt,
        recorder_type: Optional[int] = recorder_opt,
        coef_a: Optional[float] = coef_a_opt,
        coef_b: Optional[float] = coef_b_opt,
        frequency: Optional[float] = freq_opt,
        tables: Optional[str] = tables_opt,
        verbose: bool = verbose_opt,
        log_file: Optional[str] = log_file_opt,
        json_sidecar: bool = json_opt,
        profile_stages: bool = profile_opt,
    ) -> None:
        """Extract inflection points from the raw profile and save to CSV."""
        if engine not in INFLECTION_ENGINES:
            typer.echo(f"Unknown engine '{engine}'; expected one of {', '.join(INFLECTION_ENGINES)}", err=True)
            raise typer.Exit(2)
        code = _run_inflections(
            input_path,
            output,
            engine,
            max_points,
            probe_type,
            recorder_type,
            coef_a,
            coef_b,
            frequency,
            tables,
            verbose,
            log_file=log_file,
            json_sidecar=json_sidecar,
            profile=profile_stages,
        )
        if code != 0:
            raise typer.Exit(code)

    @app.command()
    def tail(
        input_path: str = typer.Argument(..., help="Text/CSV file with one temperature per line"),
        probe_type: Optional[int] = probe_opt,
        recorder_type: Optional[int] = recorder_opt,
        coef_a: Optional[float] = coef_a_opt,
        coef_b: Optional[float] = coef_b_opt,
        frequency: Optional[float] = freq_opt,
        tables: Optional[str] = tables_opt,
        verbose: bool = verbose_opt,
    ) -> None:
        """Print the one-meter index where the isothermal tail starts."""
        _setup_logging(verbose)
        try:
            calc = _build_calculator(
                input_path, probe_type, recorder_type, coef_a, coef_b, frequency, tables
            )
        except (XBTError, OSError) as e:
            logging.error(str(e))
            raise typer.Exit(2)
        typer.echo(str(calc.tail_depth_index()))

    @app.command()
    def types(
        tables: Optional[str] = tables_opt,
        verbose: bool = verbose_opt,
    ) -> None:
        """List known probe and recorder type codes."""
        _setup_logging(verbose)
        try:
            table = _resolve_table(tables)
        except (XBTError, OSError) as e:
            logging.error(str(e))
            raise typer.Exit(2)
        typer.echo("Probes:")
        for code in sorted(table.probes):
            p = table.probes[code]
            typer.echo(f"  {p.code:4d}  {p.name:<30s} A={p.a:.4f} B={p.b:.4f}")
        typer.echo("Recorders:")
        for code in sorted(table.recorders):
            r = table.recorders[code]
            typer.echo(f"  {r.code:4d}  {r.name:<30s} {r.frequency_hz:.2f} Hz")

    return app


def main_cli() -> int:
    app = _build_typer_app()
    app()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main_cli())
