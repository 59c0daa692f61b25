"""Jupiter price feed for Solana token mints.

Jupiter's price endpoint exposes no trailing volume, so the 24h volume is an
estimate derived from price and a per-mint liquidity multiplier.
"""

import logging

from trendpilot.errors import FeedUnavailable
from trendpilot.feeds.base import PollingFeed, parse_positive
from trendpilot.feeds.http import RateLimitedFetcher

logger = logging.getLogger("trendpilot.feeds")

PRICE_URL = "https://quote-api.jup.ag/v6/price"
QUOTE_URL = "https://quote-api.jup.ag/v6/quote"

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

# Liquidity multipliers for the volume estimate
_VOLUME_MULTIPLIERS: dict[str, float] = {
    SOL_MINT: 1000.0,
    USDC_MINT: 800.0,
}
_DEFAULT_VOLUME_MULTIPLIER = 10.0
_VOLUME_BASE_UNITS = 1_000_000.0

# Liquidity check: quote one token (base units) into USDC at 0.5% slippage
_LIQUIDITY_AMOUNT = 1_000_000
_LIQUIDITY_SLIPPAGE_BPS = 50
_MAX_PRICE_IMPACT_PCT = 1.0


class JupiterFeed(PollingFeed):
    """Polls the Jupiter price API.

    Args:
        fetcher: Shared ``RateLimitedFetcher``.
        poll_interval: Seconds between polls for subscribed mints.
    """

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        poll_interval: float = 2.0,
        price_url: str = PRICE_URL,
        quote_url: str = QUOTE_URL,
    ) -> None:
        super().__init__(poll_interval=poll_interval)
        self._fetcher = fetcher
        self._price_url = price_url
        self._quote_url = quote_url

    async def get_price(self, instrument_id: str) -> float:
        data = await self._fetcher.get_json(
            self._price_url, params={"ids": instrument_id},
        )
        try:
            raw = data["data"][instrument_id]["price"]
        except (KeyError, TypeError) as exc:
            raise FeedUnavailable(
                f"Jupiter returned no price for {instrument_id}"
            ) from exc
        price = parse_positive(raw)
        if price is None:
            raise FeedUnavailable(f"Jupiter returned invalid price {raw!r}")
        return price

    async def get_volume_24h(self, instrument_id: str) -> float:
        price = await self.get_price(instrument_id)
        multiplier = _VOLUME_MULTIPLIERS.get(instrument_id, _DEFAULT_VOLUME_MULTIPLIER)
        return price * _VOLUME_BASE_UNITS * multiplier

    async def check_liquidity(self, instrument_id: str, output_mint: str = USDC_MINT) -> bool:
        """``True`` when swapping one token into *output_mint* moves price < 1%.

        Any quote failure counts as illiquid.
        """
        try:
            data = await self._fetcher.get_json(
                self._quote_url,
                params={
                    "inputMint": instrument_id,
                    "outputMint": output_mint,
                    "amount": str(_LIQUIDITY_AMOUNT),
                    "slippageBps": _LIQUIDITY_SLIPPAGE_BPS,
                },
            )
            impact = float(data["priceImpactPct"])
        except (FeedUnavailable, KeyError, TypeError, ValueError) as exc:
            logger.warning("Jupiter liquidity check for %s failed: %s", instrument_id, exc)
            return False
        return impact < _MAX_PRICE_IMPACT_PCT
