"""
Воркер OCR Queue.

Запуск:
    python -m ocr_queue.worker          # фоновые воркеры до Ctrl+C
    python -m ocr_queue.worker --once   # обработать очередь и выйти
"""

import argparse
import logging
import time

from ocr_queue.config import settings
from ocr_queue.errors import QueuePausedError
from ocr_queue.services.processing_service import ProcessingService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [OCR-Queue] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="OCR Queue worker")
    parser.add_argument(
        "--once",
        action="store_true",
        help="обработать задания из очереди и завершиться",
    )
    args = parser.parse_args()

    service = ProcessingService.from_settings(settings)
    logger.info(
        f"OCR Queue: provider={settings.provider}, "
        f"jobs={settings.max_concurrent_jobs}, "
        f"chunks={settings.concurrent_chunks}x{settings.pages_per_chunk}, "
        f"store={settings.record_store}, storage={settings.storage_type}"
    )

    if args.once:
        service.queue.recover_interrupted()
        try:
            started = service.process_queue()
        except QueuePausedError as e:
            logger.warning(str(e))
            return
        finally:
            service.close_providers()
        logger.info(f"Обработано заданий: {started}")
        return

    service.start()
    try:
        while True:
            time.sleep(settings.poll_interval_seconds)
    except KeyboardInterrupt:
        logger.info("Остановка по Ctrl+C")
    finally:
        service.stop()


if __name__ == "__main__":
    main()
