"""
Funding resource (subscription) lifecycle: create, fund, consumers, consumer-contract sync.
"""

from .manager import SubscriptionManager
from .types import FundingResource

__all__ = ["SubscriptionManager", "FundingResource"]
