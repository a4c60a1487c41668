# run_processing.py
import os
import argparse
import logging

from jetflow.errors import ConfigurationError
from jetflow.pipeline import NpzCacheSink, run_events
from jetflow.settings import config_tag_from_path, load_cfg_from_path, settings_from_cfg
from jetflow.sources import source_from_settings


def parse_args():
    ap = argparse.ArgumentParser(description="Cluster events, build pT-flow maps and write caches for plotting.")
    ap.add_argument("--config", "-c", default="config.py",
                    help="Path to config file, e.g. configs/example_config.py (default: config.py)")
    ap.add_argument("--max-events", "-n", type=int, default=None,
                    help="Override RUNTIME['max_events']")
    ap.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return ap.parse_args()


# -----------------------------
# Main
# -----------------------------
def run(cfg, cfg_tag: str, max_events=None):
    if max_events is not None:
        cfg.RUNTIME = dict(getattr(cfg, "RUNTIME", {}), max_events=max_events)

    # bad settings stop here, before any event is generated
    settings = settings_from_cfg(cfg)
    source = source_from_settings(settings)

    out_cache = os.path.join(settings.outdir, cfg_tag, "cache")
    sink = NpzCacheSink(out_cache)

    print(f"\n=== config: {cfg_tag} | R = {settings.R} | algorithms: {', '.join(settings.algorithms)} ===")
    print(f"grid: |eta| < {settings.eta_max} in {settings.n_eta} x {settings.n_phi} cells, "
          f"{settings.strategy} search, {len(source)} events")

    summary = run_events(source, settings, sink)

    print(f"Processed {summary.n_events} events: {summary.n_skipped} skipped, "
          f"{summary.n_discarded} discarded, {summary.n_records} flow maps written")
    print(f"Cache in: {out_cache}")
    return summary


if __name__ == "__main__":
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cfg = load_cfg_from_path(args.config)
    tag = config_tag_from_path(args.config)
    try:
        run(cfg, tag, max_events=args.max_events)
    except ConfigurationError as err:
        raise SystemExit(f"Configuration error: {err}")
