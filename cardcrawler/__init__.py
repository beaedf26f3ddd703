"""Resumable, checkpointed crawl-and-enrich engine for paginated card catalogues."""

from .config import Config
from .errors import CorruptState, CrawlError, Fatal, NavigationError, NetworkDown
from .models import CandidateItem, CrawlState, Record, WorkCoordinate
from .scheduler import CrawlScheduler
from .store import PersistentStore

__version__ = "0.1.0"

__all__ = [
    "Config",
    "CorruptState",
    "CrawlError",
    "CrawlScheduler",
    "CandidateItem",
    "CrawlState",
    "Fatal",
    "NavigationError",
    "NetworkDown",
    "PersistentStore",
    "Record",
    "WorkCoordinate",
]
