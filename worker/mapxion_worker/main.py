from __future__ import annotations

from mapxion.log import configure_logging
from mapxion_worker.celery_app import celery_app, settings


def main() -> None:
    configure_logging(settings.log_level)
    celery_app.worker_main(
        [
            "worker",
            f"--loglevel={settings.log_level}",
            f"--concurrency={settings.concurrency}",
            "--queues",
            settings.queue_name,
        ]
    )


if __name__ == "__main__":
    main()
