"""缓存层对外暴露的接口"""
from .redis_cache import init_redis_client, shutdown_redis_client

__all__ = ["init_redis_client", "shutdown_redis_client"]
