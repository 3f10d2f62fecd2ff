from ..config import RoutingRule
from ..rate_limit import bucket_key


class FakeRateLimiter:
    """In-memory stand-in for RateLimiter; records calls and answers with allow_next."""
    def __init__(self, allow: bool=True):
        self.allow_next = allow
        self.calls = []

    async def load(self):
        pass

    async def allow(self, key:str, capacity:int, rate:float, tokens:int = 1):
        self.calls.append((key, capacity, rate, tokens))

        return self.allow_next, (capacity - tokens if self.allow_next else 0)

    async def allow_rule(self, client: str, rule: RoutingRule):
        return await self.allow(bucket_key(client, rule),
                                capacity=rule.limit_rps * rule.limit_burst_multiplier,
                                rate=float(rule.limit_rps))
