from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import httpx

from alerts import AlertRouter, Engine, RuleEvaluator, TokenBucket
from alerts.router import Notification, Notifier
from app.providers.store.sqlite_store import SQLiteStore
from notify.jsonl import JsonlReceiver, LogReceiver
from notify.telegram import TelegramReceiver
from notify.webhook import WebhookReceiver
from scrape import ScrapeScheduler, Target, build_targets

from .config import BeaconConfig, ReceiverConfig

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    config: BeaconConfig
    store: SQLiteStore
    scheduler: ScrapeScheduler
    evaluator: RuleEvaluator
    router: AlertRouter


def build_integrations(rc: ReceiverConfig) -> List[Notifier]:
    out: List[Notifier] = []
    for c in rc.webhook_configs:
        out.append(
            WebhookReceiver(
                url=c["url"],
                send_resolved=bool(c.get("send_resolved", True)),
                max_attempts=int(c.get("max_attempts", 3)),
                headers=c.get("headers"),
            )
        )
    for c in rc.telegram_configs:
        out.append(
            TelegramReceiver(
                token=c.get("bot_token"),
                chat_id=str(c["chat_id"]) if c.get("chat_id") is not None else None,
                send_resolved=bool(c.get("send_resolved", True)),
            )
        )
    for c in rc.jsonl_configs:
        out.append(JsonlReceiver(path=c.get("path", "data/notifications.jsonl"), send_resolved=bool(c.get("send_resolved", True))))
    for c in rc.log_configs:
        out.append(LogReceiver(send_resolved=bool(c.get("send_resolved", True))))
    return out


def build_receivers(cfg: BeaconConfig) -> Tuple[Dict[str, List[Notifier]], Dict[str, TokenBucket]]:
    receivers: Dict[str, List[Notifier]] = {}
    limits: Dict[str, TokenBucket] = {}
    for rc in cfg.receivers:
        receivers[rc.name] = build_integrations(rc)
        if not receivers[rc.name]:
            logger.warning("Receiver %s has no integrations; its notifications are discarded", rc.name)
        if rc.rate_limit is not None:
            limits[rc.name] = TokenBucket(*rc.rate_limit)
    return receivers, limits


def build_targets_for(cfg: BeaconConfig) -> List[Target]:
    targets: List[Target] = []
    for job in cfg.scrape_configs:
        targets.extend(build_targets(job, cfg.global_.scrape_interval, cfg.global_.scrape_timeout))
    return targets


def build_pipeline(cfg: BeaconConfig, client: Optional[httpx.Client] = None, clock=time.time) -> Pipeline:
    store = SQLiteStore(db_path=cfg.db_path)
    store.init_db()

    scheduler = ScrapeScheduler(build_targets_for(cfg), store, client=client, clock=clock)
    evaluator = RuleEvaluator(
        cfg.rule_groups,
        store,
        engine=Engine(store, cfg.global_.lookback_delta),
        external_labels=cfg.global_.external_labels,
        state_path=cfg.state_path,
        generator_url=cfg.global_.external_url,
    )
    receivers, limits = build_receivers(cfg)
    router = AlertRouter(
        cfg.route,
        receivers,
        inhibit_rules=cfg.inhibit_rules,
        rate_limits=limits,
        resolve_timeout=cfg.global_.resolve_timeout,
        clock=clock,
        external_url=cfg.global_.external_url,
    )
    return Pipeline(config=cfg, store=store, scheduler=scheduler, evaluator=evaluator, router=router)


def run_cycle(p: Pipeline, now: Optional[float] = None, force: bool = False) -> List[Notification]:
    """One evaluate -> route -> notify pass. force=True evaluates every group and skips group timers."""
    now = time.time() if now is None else now
    alerts = p.evaluator.evaluate_all(now) if force else p.evaluator.evaluate_due(now)
    if alerts:
        p.router.receive(alerts, now)
    return p.router.flush(now, force=force)
