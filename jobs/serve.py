from __future__ import annotations

import logging
import signal
import threading
import time

from jobs.config import load_config
from jobs.pipeline import Pipeline, build_pipeline, run_cycle
from jobs.retention import apply_retention

logger = logging.getLogger(__name__)

RETENTION_EVERY = 3600.0
# how often the router timers are checked between evaluations
FLUSH_TICK = 1.0


class Server:
    """Scrape thread plus an evaluate -> route -> flush loop in the calling thread."""

    def __init__(self, p: Pipeline, clock=time.time) -> None:
        self.p = p
        self._clock = clock
        self._stop = threading.Event()
        self._last_retention = 0.0

    def stop(self, *_args) -> None:
        self._stop.set()

    def save_state(self) -> None:
        path = self.p.config.router_state_path
        # pick up silences written since the last tick before overwriting the file
        self.p.router.reload_silences(path)
        self.p.evaluator.save_state()
        self.p.router.save_state(path)

    def tick(self, now: float) -> int:
        self.p.router.reload_silences(self.p.config.router_state_path)
        evaluated = bool(self.p.evaluator.due_groups(now))
        sent = run_cycle(self.p, now)
        if evaluated or sent:
            self.save_state()
        if now - self._last_retention >= RETENTION_EVERY:
            self._last_retention = now
            try:
                apply_retention(self.p.store, self.p.config.global_.retention, now)
            except Exception:
                logger.exception("Retention failed")
        return len(sent)

    def run(self) -> None:
        cfg = self.p.config
        self.p.evaluator.load_state()
        self.p.router.load_state(cfg.router_state_path)
        self.p.scheduler.start()
        print(f"[serve] {len(self.p.scheduler.targets)} targets, {len(cfg.rule_groups)} rule groups, db={cfg.db_path}")

        try:
            while not self._stop.is_set():
                try:
                    n = self.tick(self._clock())
                    if n:
                        print(f"[serve] sent {n} notifications")
                except Exception:
                    logger.exception("Evaluation cycle failed")
                self._stop.wait(FLUSH_TICK)
        finally:
            print("[serve] Shutting down ...")
            self.p.scheduler.stop()
            self.save_state()
            print("[serve] State saved. Bye.")


def run_serve(config_path: str | None = None) -> None:
    cfg = load_config(config_path)
    server = Server(build_pipeline(cfg))
    signal.signal(signal.SIGINT, server.stop)
    signal.signal(signal.SIGTERM, server.stop)
    server.run()


if __name__ == "__main__":
    import sys as _sys

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_serve(_sys.argv[1] if len(_sys.argv) > 1 else None)
