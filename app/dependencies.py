"""Process-wide service objects shared by the routers."""

from dataclasses import dataclass
from functools import lru_cache

from app.config import Settings
from app.services.cache import AnalysisCache
from app.services.dispatcher import CrawlDispatcher
from app.services.link_checker import LinkHealthChecker, LinkProbe
from app.services.persistence import InMemoryPersistence, Persistence


@dataclass
class Services:
    settings: Settings
    persistence: Persistence
    cache: AnalysisCache
    dispatcher: CrawlDispatcher
    link_checker: LinkHealthChecker


def build_services(settings: Settings, persistence: Persistence) -> Services:
    probe = LinkProbe(settings.link_check_endpoint, settings.link_check_token)
    return Services(
        settings=settings,
        persistence=persistence,
        cache=AnalysisCache(),
        dispatcher=CrawlDispatcher(settings, persistence),
        link_checker=LinkHealthChecker(persistence, probe, settings.has_feature),
    )


@lru_cache(maxsize=1)
def get_services() -> Services:
    return build_services(Settings.from_env(), InMemoryPersistence())
