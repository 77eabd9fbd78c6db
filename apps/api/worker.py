"""RQ worker process entrypoint for address resolution jobs."""

import logging

from rq import Worker

from config import settings
from services.job_queue import ADDRESS_QUEUE_NAME, get_redis_connection


def main():
    logging.basicConfig(level=settings.LOG_LEVEL.upper())
    redis_conn = get_redis_connection()
    worker = Worker([ADDRESS_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
