"""
Provider Balance Router
Orders recharge providers by live balance and drops those below the fleet threshold.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from config import Config
from models import ProviderBalance
from services.recharge_providers import RechargeProviderClient
from utils.recharge_exceptions import NoProviderAvailable

logger = logging.getLogger(__name__)


class ProviderBalanceRouter:
    """Picks providers for a charge; balances are never cached"""

    def __init__(
        self,
        providers: Dict[str, RechargeProviderClient],
        min_balance_threshold: float,
        balance_timeout: float = None,
        priorities: Optional[Dict[str, int]] = None,
    ):
        self.providers = providers
        self.min_balance_threshold = min_balance_threshold
        self.balance_timeout = balance_timeout or Config.WEBSERVICE_TIMEOUT
        self.priorities = priorities if priorities is not None else Config.PROVIDER_PRIORITY

    async def _read_balance(self, name: str, client: RechargeProviderClient) -> ProviderBalance:
        priority = self.priorities.get(name, 99)
        try:
            balance = await asyncio.wait_for(client.get_balance(), timeout=self.balance_timeout)
        except Exception as e:
            # An unreadable provider cannot be trusted with a charge
            logger.error(f"❌ PROVIDER_BALANCE_UNAVAILABLE: {name}: {type(e).__name__}: {e}")
            balance = 0.0
        return ProviderBalance(name=name, balance=float(balance or 0), priority=priority)

    async def get_all_balances(self) -> List[ProviderBalance]:
        return list(await asyncio.gather(
            *(self._read_balance(name, client) for name, client in self.providers.items())
        ))

    async def get_providers_ordered_by_balance(self) -> List[ProviderBalance]:
        """
        Fresh balances, highest first, filtered to balance >= threshold

        Raises:
            NoProviderAvailable: when no provider clears the threshold
        """
        balances = await self.get_all_balances()
        eligible = [b for b in balances if b.balance >= self.min_balance_threshold]
        eligible.sort(key=lambda b: (-b.balance, b.priority))

        summary = ", ".join(f"{b.name}=${b.balance:.2f}" for b in balances)
        if not eligible:
            logger.error(
                f"🚫 NO_PROVIDER_AVAILABLE: threshold=${self.min_balance_threshold:.2f} balances: {summary}"
            )
            raise NoProviderAvailable(
                f"No provider has balance >= {self.min_balance_threshold} ({summary})",
                balances=[{"name": b.name, "balance": b.balance} for b in balances],
            )

        logger.info(f"💰 PROVIDERS_ORDERED: {' > '.join(b.name for b in eligible)} ({summary})")
        return eligible

    def get_client(self, name: str) -> RechargeProviderClient:
        return self.providers[name]
