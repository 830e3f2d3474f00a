"""
Exchange rates used by adapters of marketplaces that do not report in UZS.

Rates are pluggable and versioned: every conversion can be traced back to the
``ExchangeRate.version`` it was made with.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from sellercloud.utils.logger import get_logger


logger = get_logger(__name__)

DEFAULT_RUB_TO_UZS = 140.0


@dataclass(frozen=True)
class ExchangeRate:
    """Rate for converting one unit of ``source`` into ``target``."""

    source: str
    target: str
    rate: float
    version: str = "static-1"

    def __post_init__(self):
        if self.rate <= 0:
            raise ValueError("Exchange rate must be positive")

    def convert(self, amount: float) -> float:
        return round(amount * self.rate, 2)


class RateTable:
    """Lookup of exchange rates by currency pair."""

    def __init__(self, rates=()):
        self._rates: Dict[Tuple[str, str], ExchangeRate] = {}
        for rate in rates:
            self.set_rate(rate)

    @classmethod
    def default(cls, rub_to_uzs: float = DEFAULT_RUB_TO_UZS, version: str = "static-1") -> "RateTable":
        """Fixed RUB to UZS approximation."""
        return cls([ExchangeRate("RUB", "UZS", rub_to_uzs, version)])

    @classmethod
    def from_config(cls, currency_config) -> "RateTable":
        return cls.default(currency_config.rub_to_uzs, currency_config.rate_version)

    def set_rate(self, rate: ExchangeRate) -> None:
        self._rates[(rate.source.upper(), rate.target.upper())] = rate
        logger.debug(f"Exchange rate {rate.source}->{rate.target} = {rate.rate} ({rate.version})")

    def get_rate(self, source: str, target: str) -> Optional[ExchangeRate]:
        return self._rates.get((source.upper(), target.upper()))

    def convert(self, amount: float, source: str, target: str = "UZS") -> float:
        """
        Convert ``amount`` from ``source`` to ``target`` currency.

        Raises:
            KeyError: If no rate is registered for the pair
        """
        if source.upper() == target.upper():
            return amount
        rate = self.get_rate(source, target)
        if rate is None:
            raise KeyError(f"No exchange rate for {source}->{target}")
        return rate.convert(amount)

    @property
    def version(self) -> str:
        """Combined version of all registered rates."""
        return ",".join(sorted(rate.version for rate in self._rates.values()))
