from rq import Queue
from redis import Redis
from examcore.core.config import settings
redis = Redis.from_url(settings.REDIS_URL)
queue = Queue(settings.RQ_QUEUE, connection=redis)
