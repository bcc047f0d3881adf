"""Shared utilities for all services"""

import asyncio
import logging

import asyncpg
import redis.asyncio as redis

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: str = "INFO"):
    """Configure root logging once for the process"""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def get_redis_client(redis_url: str):
    """Get Redis client"""
    return redis.from_url(redis_url, encoding="utf-8", decode_responses=True)


async def create_postgres_pool(postgres_url: str, attempts: int = 5, delay: float = 5.0):
    """Create the asyncpg pool, retrying while PostgreSQL comes up"""
    for attempt in range(attempts):
        try:
            pool = await asyncpg.create_pool(
                postgres_url,
                min_size=2,
                max_size=10,
                timeout=10,
                command_timeout=10
            )
            logger.info("✅ Connected to PostgreSQL")
            return pool
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as e:
            logger.warning(f"PostgreSQL connection attempt {attempt + 1} failed: {e}")
            if attempt < attempts - 1:
                await asyncio.sleep(delay)
            else:
                logger.error(f"❌ Could not connect to PostgreSQL after {attempts} attempts")
                raise
