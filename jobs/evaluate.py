from __future__ import annotations

import logging
import time

from jobs.config import load_config
from jobs.pipeline import build_pipeline, run_cycle


def run_evaluate(config_path: str | None = None, now: float | None = None) -> int:
    """
    One evaluation pass for cron-style deployments.

    Group timers do not survive between runs, so every group is evaluated and
    flushed right away; the persisted notification log keeps repeats down to
    repeat_interval.
    """
    cfg = load_config(config_path)
    p = build_pipeline(cfg)
    now = time.time() if now is None else now

    restored = p.evaluator.load_state()
    p.router.load_state(cfg.router_state_path)
    print(f"[evaluate] {len(cfg.rule_groups)} rule groups, {restored} alerts restored")

    try:
        sent = run_cycle(p, now, force=True)
    finally:
        p.evaluator.save_state()
        p.router.save_state(cfg.router_state_path)
        p.scheduler.stop()

    for key, h in sorted(p.evaluator.rule_health().items()):
        if h.health == "err":
            print(f"[evaluate] rule {key} failed: {h.last_error}")

    active = p.evaluator.active_alerts()
    firing = sum(1 for a in active if a.state == "firing")
    pending = sum(1 for a in active if a.state == "pending")
    print(f"[evaluate] Done. firing={firing} pending={pending} notifications={len(sent)}")
    return len(sent)


if __name__ == "__main__":
    import sys as _sys

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_evaluate(_sys.argv[1] if len(_sys.argv) > 1 else None)
