import time
from pathlib import Path
import redis.exceptions
from redis.asyncio import Redis
from .config import RoutingRule

LUA_SCRIPT = Path(__file__).parent / 'redis/token/bucket.lua'
LUA = LUA_SCRIPT.read_text()


def bucket_key(client: str, rule: RoutingRule) -> str:
    # one bucket per client per Ingress resource, like limit-rps zones in ingress-nginx
    return f'rl:{client}:{rule.ingress}'


class RateLimiter:
    """
    Redis-backed token-bucket rate limiter.

    Utilizes Lua script to implement atomic check-and-decrement semantics across
    concurrent router instances.
    """
    def __init__(self, redis: Redis):
        self.redis = redis
        self.sha: str|None = None

    async def load(self) -> None:
        """
        Load LUA script into Redis and cache the SHA.
        """
        self.sha = await self.redis.script_load(LUA)

    async def _eval(self, *args) -> list:
        return await self.redis.evalsha(self.sha,
                                        0,  # num Redis keys passed in explicitly
                                        *args)

    async def allow(self,
                    key: str,
                    capacity: int,
                    rate: float,
                    tokens: int=1) -> tuple[bool, float]:
        """
        Attempt to consume tokens from the Redis bucket.
        :return: (allowed, remaining_tokens)
        """
        if self.sha is None:
            raise RuntimeError("RateLimiter not initialized. Call load() first.")

        now_ms = int(time.time() * 1000)
        try:
            result = await self._eval(key, capacity, rate, now_ms, tokens)
        except redis.exceptions.NoScriptError:
            # script cache flushed (e.g. Redis restart)
            await self.load()
            result = await self._eval(key, capacity, rate, now_ms, tokens)

        return bool(int(result[0])), float(result[1])

    async def allow_rule(self, client: str, rule: RoutingRule) -> tuple[bool, float]:
        """Apply the limit-rps settings of a rule to one client."""
        return await self.allow(bucket_key(client, rule),
                                capacity=rule.limit_rps * rule.limit_burst_multiplier,
                                rate=float(rule.limit_rps))
