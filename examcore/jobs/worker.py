import logging
from rq import Worker
from examcore.jobs.queue import redis
from examcore.core.config import settings
if __name__ == "__main__":
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL), format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    w = Worker([settings.RQ_QUEUE], connection=redis)
    w.work(with_scheduler=True)
