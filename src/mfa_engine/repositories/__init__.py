from .redis_repo import RedisRepository
from .user_repo import UserRepository

__all__ = ["RedisRepository", "UserRepository"]
