"""
Matching job handlers and the registry that wires them to their queue.
"""

import logging
from typing import Any, Dict

from jobs.registry import JobRegistry, QueueConfig
from jobs.schemas import (
    BatchMatchingPayload,
    BidirectionalMatchingPayload,
    DocumentMatchingPayload,
    JobType,
    TransactionMatchingPayload,
)
from reconciliation.services.matching_service import MatchingService

logger = logging.getLogger(__name__)


def build_registry(
    matching_service: MatchingService,
    queue_config: QueueConfig,
) -> JobRegistry:
    """
    Register the matching queue and its four job types.
    """
    registry = JobRegistry()
    registry.register_queue(queue_config)

    async def process_document_matching(payload: DocumentMatchingPayload) -> Dict[str, Any]:
        outcome = await matching_service.match_document(str(payload.team_id), str(payload.document_id))
        return outcome.to_dict()

    async def process_transaction_matching(payload: TransactionMatchingPayload) -> Dict[str, Any]:
        outcome = await matching_service.match_transaction(str(payload.team_id), str(payload.transaction_id))
        return outcome.to_dict()

    async def batch_process_matching(payload: BatchMatchingPayload) -> Dict[str, Any]:
        return await matching_service.process_batch(
            str(payload.team_id), [str(i) for i in payload.document_ids]
        )

    async def match_transactions_bidirectional(payload: BidirectionalMatchingPayload) -> Dict[str, Any]:
        return await matching_service.process_bidirectional(
            str(payload.team_id), [str(i) for i in payload.new_transaction_ids]
        )

    registry.register(
        JobType.PROCESS_DOCUMENT_MATCHING, queue_config.name,
        DocumentMatchingPayload, process_document_matching,
    )
    registry.register(
        JobType.PROCESS_TRANSACTION_MATCHING, queue_config.name,
        TransactionMatchingPayload, process_transaction_matching,
    )
    registry.register(
        JobType.BATCH_PROCESS_MATCHING, queue_config.name,
        BatchMatchingPayload, batch_process_matching,
    )
    registry.register(
        JobType.MATCH_TRANSACTIONS_BIDIRECTIONAL, queue_config.name,
        BidirectionalMatchingPayload, match_transactions_bidirectional,
    )

    logger.info(f"Matching jobs registered on queue {queue_config.name}")
    return registry
