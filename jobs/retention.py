from __future__ import annotations

import logging
import time

from app.providers.store.sqlite_store import SQLiteStore
from jobs.config import load_config


def apply_retention(store: SQLiteStore, retention: float, now: float | None = None) -> int:
    now = time.time() if now is None else now
    return store.delete_before(now - retention)


def run_retention(config_path: str | None = None) -> int:
    cfg = load_config(config_path)
    store = SQLiteStore(db_path=cfg.db_path)
    store.init_db()
    deleted = apply_retention(store, cfg.global_.retention)
    stats = store.stats()
    print(f"[retention] Deleted {deleted} samples older than {cfg.global_.retention:.0f}s; "
          f"{stats['series']} series / {stats['samples']} samples left")
    return deleted


if __name__ == "__main__":
    import sys as _sys

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_retention(_sys.argv[1] if len(_sys.argv) > 1 else None)
