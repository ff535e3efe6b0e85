"""
Scrape side of the pipeline: exposition parsing, targets and the scheduler.
"""

from .exposition import ExpositionParseError, ParsedSample, parse_exposition, metric_types
from .targets import (
    ScrapeError,
    ScrapeJobConfig,
    ScrapeResult,
    StaticConfig,
    Target,
    TargetHealth,
    build_targets,
    scrape_target,
)
from .scheduler import ScrapeScheduler
