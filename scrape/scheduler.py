from __future__ import annotations

import logging
import math
import threading
import time
import zlib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional

import httpx

from app.providers.store.labels import fingerprint
from app.providers.store.sqlite_store import SQLiteStore

from .targets import ScrapeResult, Target, TargetHealth, scrape_target

logger = logging.getLogger(__name__)


class ScrapeScheduler:
    """
    Pulls every target on its own interval.

    The first scrape of a target is offset inside its interval by a stable
    hash of the target key so that targets sharing an interval spread out.
    Missed ticks are skipped, never replayed.
    """

    def __init__(
        self,
        targets: Iterable[Target],
        store: SQLiteStore,
        client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.time,
        max_workers: int = 8,
        tick: float = 1.0,
    ) -> None:
        self.targets: List[Target] = list(targets)
        self.store = store
        self._owns_client = client is None
        self._client = client or httpx.Client(follow_redirects=True)
        self._clock = clock
        self._max_workers = max(1, max_workers)
        self._tick = tick

        self._next: Dict[str, float] = {}
        self._health: Dict[str, TargetHealth] = {t.key: TargetHealth() for t in self.targets}
        # fingerprint -> labels exposed by each target on its last scrape
        self._exposed: Dict[str, Dict[str, Dict[str, str]]] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── scheduling ────────────────────────────────────────────────────────

    @staticmethod
    def offset(target: Target) -> float:
        return (zlib.crc32(target.key.encode("utf-8")) % 10_000) / 10_000 * target.interval

    def due(self, now: float) -> List[Target]:
        out = []
        for t in self.targets:
            nxt = self._next.get(t.key)
            if nxt is None:
                nxt = now + self.offset(t)
                self._next[t.key] = nxt
            if nxt <= now:
                out.append(t)
        return out

    def _reschedule(self, target: Target, now: float) -> None:
        nxt = self._next.get(target.key)
        if nxt is None or nxt > now:
            self._next[target.key] = now + target.interval
            return
        missed = math.floor((now - nxt) / target.interval)
        if missed:
            logger.debug("Target %s skipped %d scrape slots", target.key, missed)
        self._next[target.key] = nxt + (missed + 1) * target.interval

    def next_scrape(self, target: Target) -> Optional[float]:
        return self._next.get(target.key)

    # ── scraping ──────────────────────────────────────────────────────────

    def run_once(self, now: Optional[float] = None, force: bool = False) -> List[ScrapeResult]:
        """Scrape all due targets (or every target with force=True) and store the results."""
        now = self._clock() if now is None else now
        with self._lock:
            targets = list(self.targets) if force else self.due(now)
            if not targets:
                return []

            workers = min(self._max_workers, len(targets))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="scrape") as pool:
                results = list(pool.map(lambda t: scrape_target(t, self._client, now), targets))

            for res in results:
                self._commit(res, now)
                self._reschedule(res.target, now)
        return results

    def _commit(self, res: ScrapeResult, now: float) -> None:
        key = res.target.key
        current = {fingerprint(s.labels): s.labels for s in res.samples}
        previous = self._exposed.get(key, {})
        gone = [labels for fp, labels in previous.items() if fp not in current]

        appended = self.store.append(res.samples)
        if gone:
            self.store.mark_stale(gone, now)
            logger.debug("Target %s: %d series went stale", key, len(gone))
        self._exposed[key] = current

        self._health[key] = TargetHealth(
            up=res.up,
            last_scrape=now,
            last_duration=res.duration,
            last_error=res.error,
            samples_scraped=res.scraped,
        )
        if appended.out_of_order:
            logger.warning("Target %s: %d out-of-order samples dropped", key, appended.out_of_order)

    def health(self) -> Dict[str, TargetHealth]:
        return {k: replace(h) for k, h in self._health.items()}

    # ── background loop ───────────────────────────────────────────────────

    def _loop(self) -> None:
        logger.info("Scrape scheduler started with %d targets", len(self.targets))
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Scrape tick failed")
            self._stop.wait(self._tick)
        logger.info("Scrape scheduler stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="scrape-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        if self._owns_client:
            self._client.close()
