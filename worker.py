"""
RQ worker entry point — runs the pipeline stage jobs enqueued by the rq
continuation channel.

    python worker.py
"""
from rq import Queue, Worker

from app.extensions import redis_client, rq_connection
from app.logging_config import configure_logging
from app.services.circuit_breaker import init_breakers


def main():
    configure_logging()
    init_breakers(redis_client)

    # Model imports register the tables on Base.metadata
    import app.models.activity  # noqa: F401
    import app.models.db_run  # noqa: F401
    import app.models.lead  # noqa: F401
    import app.models.lead_run  # noqa: F401

    worker = Worker([Queue(connection=rq_connection)], connection=rq_connection)
    worker.work()


if __name__ == '__main__':
    main()
