"""
Unit Tests for the Job Registry and Payload Schemas

Tests:
- Queue and job type registration
- Fail-fast resolution of unknown job types and queues
- Payload validation at the deserialisation boundary
- Queue defaults and backoff
- Matching job handlers

Run with: pytest backend/tests/test_registry.py -v
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from config import Settings
from jobs.errors import DuplicateRegistrationError, PayloadValidationError, QueueNotRegisteredError
from jobs.matching_jobs import build_registry
from jobs.registry import JobRegistry, QueueConfig
from jobs.schemas import (
    BatchMatchingPayload,
    DocumentMatchingPayload,
    JobType,
    MAX_BATCH_DOCUMENTS,
)
from reconciliation.models import MatchAction, MatchOutcome

TEAM_ID = "5f0c6a52-8f0e-4f43-9a43-0d6a3f3b2c11"


async def noop_handler(payload):
    return {}


class TestQueueConfig:
    """Queue defaults."""

    def test_defaults(self):
        config = QueueConfig(name="transaction-matching")

        assert config.concurrency == 20
        assert config.attempts == 3
        assert config.backoff_seconds == 2.0
        assert config.keep_completed_count == 50
        assert config.keep_completed_seconds == 24 * 3600
        assert config.keep_failed_count == 50
        assert config.keep_failed_seconds == 7 * 24 * 3600

    def test_exponential_backoff(self):
        config = QueueConfig(name="q")
        assert [config.backoff_delay(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_from_settings(self):
        settings = Settings(JOB_ATTEMPTS=5, JOB_BACKOFF_SECONDS=1.0, JOB_MAX_DURATION_SECONDS=30.0)
        config = QueueConfig.from_settings(settings, name="q", concurrency=4)

        assert config.attempts == 5
        assert config.backoff_seconds == 1.0
        assert config.max_duration_seconds == 30.0
        assert config.concurrency == 4


class TestJobRegistry:
    """Registration and resolution."""

    @pytest.fixture
    def registry(self):
        registry = JobRegistry()
        registry.register_queue(QueueConfig(name="transaction-matching"))
        return registry

    def test_register_and_resolve(self, registry):
        registry.register(
            JobType.PROCESS_DOCUMENT_MATCHING, "transaction-matching",
            DocumentMatchingPayload, noop_handler,
        )

        definition = registry.resolve(JobType.PROCESS_DOCUMENT_MATCHING)
        assert definition.queue_name == "transaction-matching"
        assert registry.resolve("process-document-matching") is definition
        assert registry.job_types("transaction-matching") == ["process-document-matching"]

    def test_unknown_job_type_fails_fast(self, registry):
        with pytest.raises(QueueNotRegisteredError):
            registry.resolve(JobType.BATCH_PROCESS_MATCHING)

    def test_unknown_queue_fails_fast(self, registry):
        with pytest.raises(QueueNotRegisteredError):
            registry.queue_config("document-ocr")
        with pytest.raises(QueueNotRegisteredError):
            registry.register(JobType.BATCH_PROCESS_MATCHING, "document-ocr", BatchMatchingPayload, noop_handler)

    def test_job_type_belongs_to_one_queue(self, registry):
        registry.register_queue(QueueConfig(name="other"))
        registry.register(JobType.BATCH_PROCESS_MATCHING, "transaction-matching", BatchMatchingPayload, noop_handler)

        with pytest.raises(DuplicateRegistrationError):
            registry.register(JobType.BATCH_PROCESS_MATCHING, "other", BatchMatchingPayload, noop_handler)

    def test_duplicate_queue(self, registry):
        with pytest.raises(DuplicateRegistrationError):
            registry.register_queue(QueueConfig(name="transaction-matching"))

    def test_zero_concurrency_rejected(self, registry):
        with pytest.raises(ValueError):
            registry.register_queue(QueueConfig(name="stalled", concurrency=0))


class TestPayloadValidation:
    """Payloads are checked when a job is deserialised."""

    @pytest.fixture
    def definition(self):
        registry = JobRegistry()
        registry.register_queue(QueueConfig(name="q"))
        return registry.register(JobType.BATCH_PROCESS_MATCHING, "q", BatchMatchingPayload, noop_handler)

    def test_valid_payload(self, definition):
        document_id = str(uuid.uuid4())
        payload = definition.parse_payload({"team_id": TEAM_ID, "document_ids": [document_id]})

        assert str(payload.team_id) == TEAM_ID
        assert [str(i) for i in payload.document_ids] == [document_id]

    @pytest.mark.parametrize("raw", [
        {},
        {"team_id": TEAM_ID},
        {"team_id": TEAM_ID, "document_ids": []},
        {"team_id": "team-1", "document_ids": [str(uuid.uuid4())]},
        {"team_id": TEAM_ID, "document_ids": ["abc"]},
        {"team_id": TEAM_ID, "document_ids": [str(uuid.uuid4())], "priority": 1},
        {"team_id": TEAM_ID, "document_ids": [str(uuid.uuid4()) for _ in range(MAX_BATCH_DOCUMENTS + 1)]},
    ])
    def test_invalid_payloads(self, definition, raw):
        with pytest.raises(PayloadValidationError) as exc_info:
            definition.parse_payload(raw)
        assert exc_info.value.job_type == "batch-process-matching"


class TestMatchingJobs:
    """Handlers registered for the matching queue."""

    @pytest.fixture
    def service(self):
        service = MagicMock()
        service.match_document = AsyncMock(return_value=MatchOutcome(action=MatchAction.NO_MATCH))
        service.match_transaction = AsyncMock(return_value=MatchOutcome(action=MatchAction.NO_MATCH_YET))
        service.process_batch = AsyncMock(return_value={"processed": 1})
        service.process_bidirectional = AsyncMock(return_value={"processed": 2})
        return service

    @pytest.fixture
    def registry(self, service):
        return build_registry(service, QueueConfig(name="transaction-matching"))

    def test_all_job_types_on_matching_queue(self, registry):
        assert sorted(registry.job_types("transaction-matching")) == sorted(t.value for t in JobType)

    @pytest.mark.asyncio
    async def test_document_handler(self, registry, service):
        document_id = str(uuid.uuid4())
        definition = registry.resolve(JobType.PROCESS_DOCUMENT_MATCHING)
        payload = definition.parse_payload({"team_id": TEAM_ID, "document_id": document_id})

        result = await definition.handler(payload)

        assert result == {"action": "no_match"}
        service.match_document.assert_awaited_once_with(TEAM_ID, document_id)

    @pytest.mark.asyncio
    async def test_transaction_handler(self, registry, service):
        transaction_id = str(uuid.uuid4())
        definition = registry.resolve(JobType.PROCESS_TRANSACTION_MATCHING)
        payload = definition.parse_payload({"team_id": TEAM_ID, "transaction_id": transaction_id})

        assert await definition.handler(payload) == {"action": "no_match_yet"}
        service.match_transaction.assert_awaited_once_with(TEAM_ID, transaction_id)

    @pytest.mark.asyncio
    async def test_batch_handler(self, registry, service):
        document_ids = [str(uuid.uuid4()) for _ in range(3)]
        definition = registry.resolve(JobType.BATCH_PROCESS_MATCHING)
        payload = definition.parse_payload({"team_id": TEAM_ID, "document_ids": document_ids})

        assert await definition.handler(payload) == {"processed": 1}
        service.process_batch.assert_awaited_once_with(TEAM_ID, document_ids)

    @pytest.mark.asyncio
    async def test_bidirectional_handler(self, registry, service):
        transaction_ids = [str(uuid.uuid4()) for _ in range(2)]
        definition = registry.resolve(JobType.MATCH_TRANSACTIONS_BIDIRECTIONAL)
        payload = definition.parse_payload({"team_id": TEAM_ID, "new_transaction_ids": transaction_ids})

        assert await definition.handler(payload) == {"processed": 2}
        service.process_bidirectional.assert_awaited_once_with(TEAM_ID, transaction_ids)
