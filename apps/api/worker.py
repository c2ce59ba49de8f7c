"""RQ worker process entrypoint for ingestion jobs."""

import logging

from rq import Worker

from config import settings
from services.ingest_queue import get_redis_connection


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    redis_conn = get_redis_connection()
    worker = Worker([settings.INGEST_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
