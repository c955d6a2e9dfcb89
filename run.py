"""CLI entrypoint."""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from dotenv import load_dotenv as _load_dotenv

from commute_audit import config
from commute_audit.analytics import render_summary
from commute_audit.errors import CommuteAuditError
from commute_audit.geocoder import PROVIDERS, build_resolver
from commute_audit.http import RequestMetrics
from commute_audit.isochrones import IsochroneGenerator
from commute_audit.pipeline import PipelineOrchestrator
from commute_audit.reporting import MapExporter, ProgressReporter, ensure_dir
from commute_audit.routes_client import RoutingEngine


def _repo_root() -> Path:
    return Path(__file__).resolve().parent


def load_env(path: str = ".env", root_dir: Optional[Path] = None) -> None:
    """Optionally load a repo-root .env file without overriding real env vars."""
    root = Path(root_dir) if root_dir else _repo_root()
    env_path = (root / path).resolve()
    if not env_path.exists():
        return
    _load_dotenv(dotenv_path=env_path, override=False)


def _split_csv_arg(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Geocode, route and map employee commutes from a CSV of addresses"
    )
    parser.add_argument("csv", nargs="?", help="CSV: street, city, postal code, employer site")
    parser.add_argument("--preflight", action="store_true", help="Run offline checks only")
    parser.add_argument("--out", type=str, default=config.OUTPUT_DIR)
    parser.add_argument("--config", type=str, default=None, help="Path to pipeline_config.json")
    parser.add_argument(
        "--thresholds",
        type=str,
        default=None,
        help="Comma-separated isochrone distances in km (default: config)",
    )
    parser.add_argument(
        "--provider-order",
        type=str,
        default=None,
        help="Comma-separated geocoder order, e.g. ban,nominatim",
    )
    return parser.parse_args(argv)


def run_preflight(api_key: Optional[str], provider_order: Sequence[str]) -> int:
    ok = True

    if api_key:
        print("OpenRouteService API key: OK")
    else:
        print(f"OpenRouteService API key: MISSING (set {config.ORS_API_KEY_ENV})")
        ok = False

    unknown = [name for name in provider_order if name not in PROVIDERS]
    if unknown:
        print(f"Geocoding providers: FAIL (unknown: {', '.join(unknown)})")
        ok = False
    else:
        print(f"Geocoding providers: OK ({' -> '.join(provider_order)})")

    print(
        "Pacing: geocode={geo}s, routes={routes}s, isochrones={iso}s, timeout={timeout}s".format(
            geo=config.GEOCODING_MIN_INTERVAL_SECONDS,
            routes=config.ROUTING_MIN_INTERVAL_SECONDS,
            iso=config.ISOCHRONE_MIN_INTERVAL_SECONDS,
            timeout=config.HTTP_TIMEOUT_SECONDS,
        )
    )
    print(f"Isochrone thresholds (km): {list(config.ISOCHRONE_THRESHOLDS_KM)}")
    print("Preflight: PASS" if ok else "Preflight: FAIL")
    return 0 if ok else 1


def build_orchestrator(
    output_dir: str,
    api_key: Optional[str],
    metrics: RequestMetrics,
    provider_order: Optional[Sequence[str]] = None,
    thresholds_km: Optional[Sequence[float]] = None,
) -> PipelineOrchestrator:
    ensure_dir(output_dir)
    progress = ProgressReporter(
        output_path=os.path.join(output_dir, "progress.json"),
        log_every=config.PROGRESS_LOG_EVERY,
        write_interval_seconds=config.PROGRESS_WRITE_INTERVAL_SECONDS,
    )
    exporter = MapExporter(output_dir, summary_renderer=render_summary)
    return PipelineOrchestrator(
        resolver_factory=lambda: build_resolver(provider_order, metrics=metrics),
        routing_factory=lambda: RoutingEngine.from_config(api_key, metrics=metrics),
        isochrone_factory=lambda: IsochroneGenerator.from_config(
            api_key, thresholds_km=thresholds_km, metrics=metrics
        ),
        renderers=[exporter],
        progress=progress,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_env()
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    config.load_pipeline_config(args.config)

    provider_order = _split_csv_arg(args.provider_order) or list(config.GEOCODING_PROVIDER_ORDER)
    thresholds = None
    if args.thresholds is not None:
        try:
            thresholds = [float(t) for t in _split_csv_arg(args.thresholds) or []]
        except ValueError:
            print(f"Invalid --thresholds: {args.thresholds}", file=sys.stderr)
            return 1
    api_key = config.ors_api_key()

    if args.preflight:
        return run_preflight(api_key, provider_order)

    if not args.csv:
        print("Missing input CSV path", file=sys.stderr)
        return 1

    metrics = RequestMetrics()
    orchestrator = build_orchestrator(
        args.out, api_key, metrics, provider_order=provider_order, thresholds_km=thresholds
    )
    try:
        state = orchestrator.run_csv(args.csv)
    except CommuteAuditError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        if orchestrator.progress is not None:
            orchestrator.progress.flush()

    for summary in (state.geocode_summary, state.route_summary, state.isochrone_summary):
        if summary is not None:
            print(f"{summary.stage}: {summary.tally()}")
    print(
        "Requests: geocode={network_geocode} (cache hits {cache_hits_geocode}), "
        "routes={network_routes}, isochrones={network_isochrones}, retries={retries}".format(
            **metrics.to_dict()
        )
    )
    if state.current_stage != "map" or not state.routes:
        print(f"Pipeline stopped at stage '{state.current_stage}'", file=sys.stderr)
        return 1
    print(f"Done. Outputs written to {args.out}/")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
