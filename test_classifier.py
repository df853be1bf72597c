"""
Retry/Error Classifier Tests

1. Remote errors map onto the error taxonomy
2. Only transient categories are retried, and only up to max_attempts
3. Backoff grows exponentially, honors Retry-After and is capped
4. Conversion failures become validation or dependency-unmapped errors
"""

import asyncio
import random

import pytest

from connectors.remote_base import (
    RemoteApiError,
    RemoteAuthError,
    RemoteConnectionError,
    RemoteNotFoundError,
    RemoteRateLimitError,
    RemoteServerError,
    RemoteTimeoutError,
    RemoteValidationError,
)
from core.conversion import ConversionResult, UNMAPPED_REFERENCE
from core.errors import MappingConflictError
from core.models.sync import EntityType, ErrorCategory, FieldError
from core.retry import ErrorClassifier, RetryPolicy


@pytest.fixture
def classifier() -> ErrorClassifier:
    return ErrorClassifier(RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0, jitter=0.0))


class TestClassification:

    @pytest.mark.parametrize("exc, category", [
        (RemoteRateLimitError("slow down", retry_after=5), ErrorCategory.TRANSIENT_RATE_LIMIT),
        (RemoteServerError("bad gateway", 502), ErrorCategory.TRANSIENT_NETWORK),
        (RemoteConnectionError("refused"), ErrorCategory.TRANSIENT_NETWORK),
        (ConnectionResetError("reset"), ErrorCategory.TRANSIENT_NETWORK),
        (RemoteTimeoutError("slow"), ErrorCategory.TIMEOUT),
        (asyncio.TimeoutError(), ErrorCategory.TIMEOUT),
        (RemoteAuthError("expired", 401), ErrorCategory.AUTH),
        (RemoteValidationError("bad vat", 422, '{"field": "tax_id_num"}'), ErrorCategory.REMOTE_REJECTED),
        (RemoteNotFoundError("gone", 404), ErrorCategory.REMOTE_REJECTED),
        (RemoteApiError("teapot", 599), ErrorCategory.TRANSIENT_NETWORK),
        (MappingConflictError("taken", existing_remote_id="mk-1"), ErrorCategory.CONFLICT),
        (KeyError("boom"), ErrorCategory.INTERNAL),
    ])
    def test_categories(self, classifier, exc, category):
        error = classifier.classify(exc, EntityType.CONTACT, local_id="c-1")
        assert error.category == category
        assert error.entity_type == EntityType.CONTACT
        assert error.local_id == "c-1"

    def test_remote_details_are_kept_verbatim(self, classifier):
        error = classifier.classify(
            RemoteValidationError("bad vat", 422, '{"field": "tax_id_num"}'),
            EntityType.CONTACT, remote_id="mk-9",
        )
        assert error.status_code == 422
        assert error.remote_body == '{"field": "tax_id_num"}'
        assert error.remote_id == "mk-9"
        assert error.is_permanent

    def test_auth_asks_for_credentials(self, classifier):
        error = classifier.classify(RemoteAuthError("expired", 401))
        assert error.requires_reauth
        assert error.details["action"] == "refresh_credentials"
        assert not classifier.should_retry(error, 1)

    def test_conflict_keeps_existing_ids(self, classifier):
        error = classifier.classify(MappingConflictError("taken", existing_local_id="c-7"))
        assert error.details["existing_local_id"] == "c-7"

    def test_validation_from_conversion(self, classifier):
        result = ConversionResult.failure([
            FieldError(field="name", code="required", message="name is required"),
            FieldError(field="email", code="invalid_format", message="email is not valid"),
        ])
        error = classifier.from_conversion(result, EntityType.CONTACT, local_id="c-1")

        assert error.category == ErrorCategory.VALIDATION
        assert len(error.field_errors) == 2
        assert "name: name is required" in error.message

    def test_unmapped_reference_from_conversion(self, classifier):
        result = ConversionResult.failure([
            FieldError(field="customer_id", code=UNMAPPED_REFERENCE, message="contact c-1 has no mapping"),
        ])
        error = classifier.from_conversion(result, EntityType.SALES_DOCUMENT, local_id="d-1")

        assert error.category == ErrorCategory.DEPENDENCY_UNMAPPED
        assert error.is_permanent

    def test_interrupted_job_can_be_retried(self, classifier):
        error = classifier.interrupted(EntityType.CONTACT, local_id="c-1")

        assert error.category == ErrorCategory.TIMEOUT
        assert error.is_transient
        assert error.local_id == "c-1"


class TestRetryDecisions:

    def test_only_transient_errors_retry(self, classifier):
        transient = classifier.classify(RemoteServerError("down", 503))
        permanent = classifier.classify(RemoteValidationError("bad", 400))

        assert classifier.should_retry(transient, 1)
        assert classifier.should_retry(transient, 2)
        assert not classifier.should_retry(transient, 3)
        assert not classifier.should_retry(permanent, 1)

    def test_exponential_backoff(self, classifier):
        error = classifier.classify(RemoteServerError("down", 503))
        assert [classifier.delay_for(n, error) for n in (1, 2, 3, 4, 5)] == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_retry_after_is_honored(self, classifier):
        error = classifier.classify(RemoteRateLimitError("slow down", retry_after=7))
        assert classifier.delay_for(1, error) == 7.0

        error = classifier.classify(RemoteRateLimitError("slow down", retry_after=120))
        assert classifier.delay_for(1, error) == 10.0

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=60.0, jitter=0.5)
        rng = random.Random(7)
        for _ in range(20):
            delay = policy.get_delay(2, rng=rng)
            assert 2.0 <= delay <= 3.0
