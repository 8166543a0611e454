"""
Task publisher — thin abstraction over Celery .apply_async()
Injected into the API routes so it can be replaced in tests.
"""

from __future__ import annotations

import asyncio
import logging
import uuid

from docpipe.schemas.processing import ProcessingOptions

logger = logging.getLogger(__name__)


class TaskPublisher:
    """
    Sends processing tasks to the broker. The Celery import is deferred so
    the broker connection is not needed at module load time. Publishing
    runs in a thread executor to keep the event loop free.
    """

    async def publish_processing(self, document_id: uuid.UUID, options: ProcessingOptions) -> str:
        from docpipe.workers.tasks import process_document

        kwargs = {"document_id": str(document_id), **options.model_dump(mode="json")}
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None, lambda: process_document.apply_async(kwargs=kwargs, countdown=1),
        )
        logger.info("Processing task published | doc=%s mode=%s task=%s", document_id, options.mode.value, result.id)
        return result.id

    async def publish_quiz(self, document_id: uuid.UUID, num_questions: int) -> str:
        from docpipe.workers.tasks import regenerate_quiz

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None,
            lambda: regenerate_quiz.apply_async(
                kwargs={"document_id": str(document_id), "num_questions": num_questions},
            ),
        )
        logger.info("Quiz task published | doc=%s questions=%d task=%s", document_id, num_questions, result.id)
        return result.id


def get_task_publisher() -> TaskPublisher:
    return TaskPublisher()
