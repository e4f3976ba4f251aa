"""
Redis client utilities for provider metadata caching
"""
import json
import logging
import redis
from typing import Optional, Dict, Any, List
from .settings import settings

logger = logging.getLogger(__name__)

class RedisClient:
    """Redis client wrapper. Every method fails open: a cache outage never blocks a payout."""

    def __init__(self, url: str = None):
        self.client = redis.Redis.from_url(url or settings.redis_url, decode_responses=True)

    # Provider bank list
    def cache_bank_list(self, banks: List[Dict[str, Any]], ttl_seconds: int = None) -> bool:
        """Store the provider's bank list"""
        try:
            ttl = ttl_seconds or settings.bank_list_cache_ttl_seconds
            return bool(self.client.setex("payout:bank_list", ttl, json.dumps(banks)))
        except redis.RedisError as e:
            logger.warning(f"Failed to cache bank list: {e}")
            return False

    def get_cached_bank_list(self) -> Optional[List[Dict[str, Any]]]:
        """Retrieve the cached bank list"""
        try:
            value = self.client.get("payout:bank_list")
            if value:
                return json.loads(value)
            return None
        except (redis.RedisError, ValueError) as e:
            logger.warning(f"Failed to read cached bank list: {e}")
            return None

# Global Redis client instance
redis_client = RedisClient()
