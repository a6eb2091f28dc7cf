from celery import Celery

from mapxion_worker.settings import WorkerSettings


settings = WorkerSettings()

celery_app = Celery("mapxion_worker", broker=settings.broker_url, include=["mapxion_worker.tasks"])
celery_app.conf.update(
    task_default_queue=settings.queue_name,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.concurrency,
    broker_connection_retry_on_startup=True,
)
