"""
Dead-letter recovery for the session analytics stream.

Recovered messages go back on the live queue with ``retryCount`` reset to 0
and ``manualRecovery``/``originalFailedAt`` attributes. A message leaves the
DLQ only after its republish succeeded; otherwise it is returned to the DLQ.
"""

import logging
from typing import Optional

from app.config import settings
from app.errors import NotFoundError, TransientInfraError
from app.services.event_queue import EventQueue, QueueMessage

logger = logging.getLogger(__name__)

DLQ_BODY_FIELDS = ("error", "failedAt", "retryCount")


class DeadLetterRecovery:
    def __init__(
        self,
        queue: EventQueue,
        live_queue: Optional[str] = None,
        dlq_queue: Optional[str] = None,
    ):
        self.queue = queue
        self.live_queue = live_queue or settings.session_stream_queue
        self.dlq_queue = dlq_queue or settings.session_dlq_queue

    def _republish(self, message: QueueMessage) -> None:
        body = {k: v for k, v in message.body.items() if k not in DLQ_BODY_FIELDS}
        attributes = dict(message.attributes)
        attributes.update(
            retryCount=0,
            manualRecovery=True,
            originalFailedAt=message.body.get("failedAt"),
        )
        self.queue.publish(self.live_queue, body, attributes)

    def _recover_one(self, message: QueueMessage, report: dict) -> None:
        report["processed"] += 1
        try:
            self._republish(message)
        except TransientInfraError as e:
            self.queue.nack(message)
            report["failed"] += 1
            report["errors"].append(
                {"sessionId": message.body.get("sessionId"), "error": str(e)}
            )
            logger.error("Republish of %s failed, returned to DLQ: %s", message.message_id, e)
            return
        self.queue.ack(message)
        report["succeeded"] += 1

    @staticmethod
    def _empty_report() -> dict:
        return {"processed": 0, "succeeded": 0, "failed": 0, "errors": []}

    def sweep(self, max_messages: int = settings.dlq_max_messages_per_run) -> dict:
        """Republish up to ``max_messages`` dead-lettered events."""
        report = self._empty_report()
        for message in self.queue.pull(self.dlq_queue, max_messages):
            self._recover_one(message, report)
        logger.info(
            "DLQ sweep: %d processed, %d succeeded, %d failed",
            report["processed"], report["succeeded"], report["failed"],
        )
        return report

    def recover_session(self, session_id: str, max_messages: int = settings.dlq_max_messages_per_run) -> dict:
        """
        Republish the dead-lettered events for one session.

        Scans one batch of the DLQ; messages for other sessions are returned
        untouched.

        Raises:
            NotFoundError: no message for ``session_id`` in the scanned batch
        """
        report = self._empty_report()
        found = False
        for message in self.queue.pull(self.dlq_queue, max_messages):
            matched = (
                message.body.get("sessionId") == session_id
                or message.attributes.get("sessionId") == session_id
            )
            if not matched:
                self.queue.nack(message)
                continue
            found = True
            self._recover_one(message, report)

        if not found:
            raise NotFoundError("Dead-lettered session", session_id)
        logger.info("Recovered session %s from DLQ: %s", session_id, report)
        return report
