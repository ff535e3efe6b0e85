from __future__ import annotations

import logging

from jobs.config import load_config
from jobs.pipeline import build_pipeline


def run_scrape(config_path: str | None = None) -> int:
    """Scrape every configured target once. Returns the number of targets that were up."""
    cfg = load_config(config_path)
    p = build_pipeline(cfg)
    print(f"[scrape] {len(p.scheduler.targets)} targets, db={cfg.db_path}")

    try:
        results = p.scheduler.run_once(force=True)
    finally:
        p.scheduler.stop()

    up = 0
    for res in sorted(results, key=lambda r: r.target.key):
        if res.up:
            up += 1
            print(f"[scrape] UP   {res.target.key} {res.scraped} samples in {res.duration:.3f}s")
        else:
            print(f"[scrape] DOWN {res.target.key} {res.error}")

    print(f"[scrape] Done. {up}/{len(results)} targets up")
    return up


if __name__ == "__main__":
    import sys as _sys

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_scrape(_sys.argv[1] if len(_sys.argv) > 1 else None)
