import logging
import redis
from examcore.core.config import settings

logger = logging.getLogger(__name__)

redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)


def get_redis():
    return redis_client


def redeem_rate_key(student_id: str) -> str:
    return f"redeem:rate:{student_id}"


def check_redeem_rate(client, student_id: str, limit: int, window: int = 60) -> tuple[bool, int]:
    """Count one redemption attempt for the student; False once over ``limit`` in ``window`` seconds."""
    key = redeem_rate_key(student_id)
    try:
        pipe = client.pipeline()
        pipe.incr(key, 1)
        pipe.expire(key, window)
        count = int(pipe.execute()[0])
    except redis.RedisError as e:
        logger.error(f"Redeem rate check failed, allowing: {e}")
        return True, 0
    return count <= limit, count
