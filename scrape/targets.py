from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from app.providers.store.labels import METRIC_NAME
from app.providers.store.sqlite_store import SampleRow

from .exposition import ExpositionParseError, parse_exposition

logger = logging.getLogger(__name__)

ACCEPT_HEADER = "text/plain;version=0.0.4;q=0.9,*/*;q=0.1"
USER_AGENT = "beacon/0.1"


class ScrapeError(RuntimeError):
    pass


@dataclass(frozen=True)
class StaticConfig:
    targets: List[str]
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ScrapeJobConfig:
    job_name: str
    static_configs: List[StaticConfig]
    metrics_path: str = "/metrics"
    scheme: str = "http"
    scrape_interval: Optional[float] = None
    scrape_timeout: Optional[float] = None
    sample_limit: int = 0
    honor_labels: bool = False


@dataclass
class Target:
    job: str
    url: str
    labels: Dict[str, str]
    interval: float = 15.0
    timeout: float = 10.0
    sample_limit: int = 0
    honor_labels: bool = False

    @property
    def key(self) -> str:
        return f"{self.job}/{self.url}"


@dataclass
class TargetHealth:
    up: Optional[bool] = None
    last_scrape: Optional[float] = None
    last_duration: float = 0.0
    last_error: Optional[str] = None
    samples_scraped: int = 0


@dataclass
class ScrapeResult:
    target: Target
    samples: List[SampleRow]
    up: bool
    duration: float
    error: Optional[str] = None
    scraped: int = 0


def build_targets(job: ScrapeJobConfig, default_interval: float = 15.0, default_timeout: float = 10.0) -> List[Target]:
    interval = job.scrape_interval or default_interval
    # a scrape never outlives its interval
    timeout = min(job.scrape_timeout or default_timeout, interval)
    path = job.metrics_path if job.metrics_path.startswith("/") else "/" + job.metrics_path

    out: List[Target] = []
    for sc in job.static_configs:
        for address in sc.targets:
            labels = {"job": job.job_name, "instance": address}
            labels.update(sc.labels)
            out.append(
                Target(
                    job=job.job_name,
                    url=f"{job.scheme}://{address}{path}",
                    labels=labels,
                    interval=interval,
                    timeout=timeout,
                    sample_limit=job.sample_limit,
                    honor_labels=job.honor_labels,
                )
            )
    return out


def _merge_labels(target: Target, scraped: Dict[str, str]) -> Dict[str, str]:
    out = dict(scraped)
    for k, v in target.labels.items():
        if k in out and k != METRIC_NAME:
            if target.honor_labels:
                continue
            out["exported_" + k] = out[k]
        out[k] = v
    return out


def _synthetic(target: Target, now: float, up: bool, duration: float, scraped: int) -> List[SampleRow]:
    def row(name: str, value: float) -> SampleRow:
        return SampleRow(labels={**target.labels, METRIC_NAME: name}, ts=now, value=value)

    return [
        row("up", 1.0 if up else 0.0),
        row("scrape_duration_seconds", duration),
        row("scrape_samples_scraped", float(scraped)),
    ]


def scrape_target(target: Target, client: httpx.Client, now: Optional[float] = None) -> ScrapeResult:
    """
    Pull one target. Never raises: failures come back as up=False with
    the error string, plus the synthetic up/duration/count series.
    """
    now = time.time() if now is None else now
    started = time.monotonic()
    samples: List[SampleRow] = []
    error: Optional[str] = None
    scraped = 0

    try:
        resp = client.get(
            target.url,
            timeout=target.timeout,
            headers={"Accept": ACCEPT_HEADER, "User-Agent": USER_AGENT},
        )
        if not 200 <= resp.status_code < 300:
            raise ScrapeError(f"server returned HTTP status {resp.status_code}")
        parsed = parse_exposition(resp.text, default_ts=now)
        scraped = len(parsed)
        if target.sample_limit and scraped > target.sample_limit:
            raise ScrapeError("sample limit exceeded")
        samples = [SampleRow(labels=_merge_labels(target, p.labels), ts=p.timestamp, value=p.value) for p in parsed]
    except (httpx.HTTPError, httpx.InvalidURL, ScrapeError, ExpositionParseError) as e:
        error = str(e) or e.__class__.__name__
        samples = []
        logger.warning("Scrape of %s failed: %s", target.url, error)
    except Exception as e:
        error = f"{e.__class__.__name__}: {e}"
        samples = []
        logger.exception("Scrape of %s failed unexpectedly", target.url)

    duration = time.monotonic() - started
    up = error is None
    samples.extend(_synthetic(target, now, up, duration, scraped))
    return ScrapeResult(target=target, samples=samples, up=up, duration=duration, error=error, scraped=scraped)
