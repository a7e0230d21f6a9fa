"""RQ worker process entrypoint for reconciliation jobs."""

import logging

from rq import Worker

from services.job_queue import RECONCILIATION_QUEUE_NAME, get_redis_connection


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    redis_conn = get_redis_connection()
    worker = Worker([RECONCILIATION_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
