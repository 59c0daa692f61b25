"""Feed registry — maps ``FEED_PROVIDER`` names to adapter classes.

Used by the CLI to build the configured feed.  ``aggregate`` combines the
adapters named in ``FEED_SOURCES`` behind one ``AggregatedFeed``.
"""

from trendpilot.config import Config
from trendpilot.feeds.aggregate import AggregatedFeed, SymbolMap
from trendpilot.feeds.base import FeedProvider
from trendpilot.feeds.binance import BinanceFeed
from trendpilot.feeds.coingecko import CoinGeckoFeed
from trendpilot.feeds.http import RateLimitedFetcher
from trendpilot.feeds.jupiter import JupiterFeed


FEED_REGISTRY: dict[str, type] = {
    "jupiter": JupiterFeed,
    "coingecko": CoinGeckoFeed,
    "binance": BinanceFeed,
}

AGGREGATE_PROVIDER = "aggregate"


def build_fetcher(config: Config) -> RateLimitedFetcher:
    """Create the shared fetcher from the feed-access settings."""
    return RateLimitedFetcher(
        min_interval=config.min_request_interval_seconds,
        backoff_base=config.backoff_base_seconds,
        backoff_cap=config.backoff_cap_seconds,
        cache_ttl=config.cache_ttl_seconds,
    )


def get_feed(name: str, fetcher: RateLimitedFetcher) -> FeedProvider:
    """Look up and instantiate a feed adapter by registry key.

    Raises ``KeyError`` if the provider name is not registered.
    """
    if name not in FEED_REGISTRY:
        raise KeyError(
            f"Unknown feed provider '{name}'. "
            f"Available: {', '.join([*FEED_REGISTRY.keys(), AGGREGATE_PROVIDER])}"
        )
    return FEED_REGISTRY[name](fetcher)


def build_feed(config: Config, fetcher: RateLimitedFetcher) -> FeedProvider:
    """Build the feed named by ``config.feed_provider``."""
    if config.feed_provider != AGGREGATE_PROVIDER:
        return get_feed(config.feed_provider, fetcher)

    symbol_map: SymbolMap = {}
    for instrument_id, source, symbol in config.feed_symbols:
        symbol_map.setdefault(instrument_id, {})[source] = symbol
    return AggregatedFeed(
        {name: get_feed(name, fetcher) for name in config.feed_sources},
        symbol_map=symbol_map,
    )
