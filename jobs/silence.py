from __future__ import annotations

import logging
import time
from typing import List, Optional

from alerts import AlertRouter
from alerts.expr import parse_duration
from app.providers.store.labels import parse_matcher
from jobs.config import load_config
from jobs.pipeline import build_receivers


def _router(config_path: Optional[str]):
    cfg = load_config(config_path)
    receivers, _ = build_receivers(cfg)
    router = AlertRouter(cfg.route, receivers, cfg.inhibit_rules)
    router.load_state(cfg.router_state_path)
    return cfg, router


def add_silence(matchers: List[str], duration: str, comment: str = "", config_path: Optional[str] = None) -> str:
    cfg, router = _router(config_path)
    now = time.time()
    sid = router.add_silence(
        [parse_matcher(m) for m in matchers],
        starts_at=now,
        ends_at=now + parse_duration(duration),
        created_by="cli",
        comment=comment,
    )
    router.save_state(cfg.router_state_path)
    return sid


def expire_silence(silence_id: str, config_path: Optional[str] = None) -> bool:
    cfg, router = _router(config_path)
    ok = router.expire_silence(silence_id)
    router.save_state(cfg.router_state_path)
    return ok


def list_silences(config_path: Optional[str] = None) -> None:
    _, router = _router(config_path)
    now = time.time()
    for s in router.silences():
        state = "active" if s.active(now) else "expired"
        print(f"[silence] {s.id} {state} {','.join(str(m) for m in s.matchers)} until {time.ctime(s.ends_at)} {s.comment}")


USAGE = """usage:
  python -m jobs.silence add DURATION MATCHER [MATCHER ...]
  python -m jobs.silence expire ID
  python -m jobs.silence list"""


if __name__ == "__main__":
    import sys as _sys

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = _sys.argv[1:]
    if args[:1] == ["add"] and len(args) >= 3:
        print(f"[silence] created {add_silence(args[2:], args[1])}")
    elif args[:1] == ["expire"] and len(args) == 2:
        print(f"[silence] expired={expire_silence(args[1])}")
    elif args[:1] == ["list"]:
        list_silences()
    else:
        print(USAGE)
        _sys.exit(2)
