"""Background worker delivering the shop's transactional emails.

This package consumes email events (order confirmations, shipping notices,
cancellations, account mails) from a durable job queue and delivers them
through a mail transport. It provides:

- Error classification separating permanent from transient failures
- Exponential retry spacing handled through the job broker
- In-process deduplication of deliveries and single-flight job execution
- Dead-letter logging of abandoned jobs
- Broker connection supervision with bounded reconnect backoff
- Graceful shutdown draining in-flight jobs
- FastAPI operator endpoints and Prometheus metrics

Example:
    Running a worker against a SQLite job store::

        from email_queue_worker.broker import SqliteJobBroker
        from email_queue_worker.worker import EmailWorker

        broker = SqliteJobBroker("/data/email_jobs.db")
        worker = EmailWorker(broker=broker, collaborators=collaborators)
        await worker.start()

Authors:
    Softwell S.r.l.
"""

__version__ = "0.1.0"
