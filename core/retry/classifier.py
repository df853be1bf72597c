"""Retry/Error Classifier.

Single place where failures are turned into ``ClassifiedError`` values and
where retry decisions are made. The batch processor and the single-record
path both go through ``ErrorClassifier`` so they share identical semantics.

Taxonomy:
    transient   transient-network (5xx, connection), transient-rate-limit (429),
                timeout. Retried with exponential backoff up to max_attempts.
    permanent   validation, conflict, dependency-unmapped, remote-rejected
                (other 4xx), cancelled, internal. Never retried.
    auth        401/403. Never retried automatically; surfaced so the caller
                can refresh credentials.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Optional

from connectors.remote_base import (
    RemoteApiError,
    RemoteAuthError,
    RemoteConnectionError,
    RemoteRateLimitError,
    RemoteServerError,
    RemoteTimeoutError,
)
from core.conversion.converter import UNMAPPED_REFERENCE, ConversionResult
from core.errors import MappingConflictError
from core.models.sync import ClassifiedError, EntityType, ErrorCategory
from core.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RetryPolicy:
    """Backoff configuration for transient failures.

    ``attempt`` is 1-based: the delay before attempt n+1 is
    base_delay * exponential_base ** (n - 1), capped at max_delay, plus up to
    ``jitter`` (a fraction of the delay) of random spread.
    """
    max_attempts: int = 5
    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    exponential_base: float = 2.0
    jitter: float = 0.1

    def get_delay(self, attempt: int, retry_after: Optional[float] = None,
                  rng: Optional[random.Random] = None) -> float:
        """Calculate delay after a failed attempt (exponential backoff)."""
        delay = self.base_delay * (self.exponential_base ** max(0, attempt - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        delay = min(delay, self.max_delay)
        if self.jitter and delay > 0:
            spread = delay * self.jitter
            delay += (rng or random).uniform(0, spread)
        return min(delay, self.max_delay)

    def should_retry(self, error: ClassifiedError, attempt: int) -> bool:
        """True if a job that failed its attempt-th try should try again."""
        return error.is_transient and attempt < self.max_attempts


class ErrorClassifier:
    """Maps exceptions and conversion failures to ClassifiedError values.

    Usage:
        classifier = ErrorClassifier(RetryPolicy(max_attempts=3))
        try:
            await remote.create(...)
        except Exception as e:
            error = classifier.classify(e, entity_type, local_id=record.id)
            if classifier.should_retry(error, attempt):
                await asyncio.sleep(classifier.delay_for(attempt, error))
    """

    def __init__(self, policy: Optional[RetryPolicy] = None, rng: Optional[random.Random] = None):
        self.policy = policy or RetryPolicy()
        self._rng = rng

    # =========================================================================
    # Classification
    # =========================================================================

    def classify(
        self,
        exc: BaseException,
        entity_type: Optional[EntityType] = None,
        local_id: Optional[str] = None,
        remote_id: Optional[str] = None,
    ) -> ClassifiedError:
        """Classify an exception raised while syncing one record."""
        context = {"entity_type": entity_type, "local_id": local_id, "remote_id": remote_id}

        if isinstance(exc, RemoteRateLimitError):
            return ClassifiedError(
                category=ErrorCategory.TRANSIENT_RATE_LIMIT,
                message=str(exc),
                status_code=exc.status_code,
                remote_body=exc.response_body or None,
                retry_after=exc.retry_after,
                **context,
            )

        if isinstance(exc, RemoteAuthError):
            return ClassifiedError(
                category=ErrorCategory.AUTH,
                message=str(exc),
                status_code=exc.status_code,
                remote_body=exc.response_body or None,
                details={"action": "refresh_credentials"},
                **context,
            )

        if isinstance(exc, (RemoteTimeoutError, asyncio.TimeoutError)):
            return ClassifiedError(
                category=ErrorCategory.TIMEOUT,
                message=str(exc) or "Timed out",
                **context,
            )

        if isinstance(exc, (RemoteServerError, RemoteConnectionError, ConnectionError)):
            status_code = getattr(exc, "status_code", None) or None
            return ClassifiedError(
                category=ErrorCategory.TRANSIENT_NETWORK,
                message=str(exc),
                status_code=status_code,
                remote_body=getattr(exc, "response_body", None) or None,
                **context,
            )

        if isinstance(exc, RemoteApiError):
            if exc.status_code >= 500:
                category = ErrorCategory.TRANSIENT_NETWORK
            else:
                category = ErrorCategory.REMOTE_REJECTED
            return ClassifiedError(
                category=category,
                message=str(exc),
                status_code=exc.status_code or None,
                remote_body=exc.response_body or None,
                **context,
            )

        if isinstance(exc, MappingConflictError):
            return ClassifiedError(
                category=ErrorCategory.CONFLICT,
                message=str(exc),
                details={
                    "existing_remote_id": exc.existing_remote_id,
                    "existing_local_id": exc.existing_local_id,
                },
                **context,
            )

        logger.error(
            f"Unclassified error while syncing {getattr(entity_type, 'value', entity_type)} "
            f"{local_id or remote_id}: {type(exc).__name__}: {exc}",
            exc_info=exc,
        )
        return ClassifiedError(
            category=ErrorCategory.INTERNAL,
            message=f"{type(exc).__name__}: {exc}",
            **context,
        )

    def from_conversion(
        self,
        result: ConversionResult,
        entity_type: Optional[EntityType] = None,
        local_id: Optional[str] = None,
        remote_id: Optional[str] = None,
    ) -> ClassifiedError:
        """Classify a failed conversion (validation or unmapped references)."""
        if result.has_unmapped_references:
            unmapped = [e for e in result.errors if e.code == UNMAPPED_REFERENCE]
            return ClassifiedError(
                category=ErrorCategory.DEPENDENCY_UNMAPPED,
                message="dependency unmapped: " + "; ".join(e.message for e in unmapped),
                field_errors=result.errors,
                entity_type=entity_type,
                local_id=local_id,
                remote_id=remote_id,
            )
        return ClassifiedError(
            category=ErrorCategory.VALIDATION,
            message=f"{len(result.errors)} validation error(s): "
                    + "; ".join(f"{e.field}: {e.message}" for e in result.errors),
            field_errors=result.errors,
            entity_type=entity_type,
            local_id=local_id,
            remote_id=remote_id,
        )

    def cancelled(self, entity_type: Optional[EntityType] = None,
                  local_id: Optional[str] = None, remote_id: Optional[str] = None) -> ClassifiedError:
        return ClassifiedError(
            category=ErrorCategory.CANCELLED,
            message="Batch cancelled before the job started",
            entity_type=entity_type,
            local_id=local_id,
            remote_id=remote_id,
        )

    def interrupted(self, entity_type: Optional[EntityType] = None,
                    local_id: Optional[str] = None, remote_id: Optional[str] = None) -> ClassifiedError:
        return ClassifiedError(
            category=ErrorCategory.TIMEOUT,
            message="Job was interrupted before it finished",
            entity_type=entity_type,
            local_id=local_id,
            remote_id=remote_id,
        )

    # =========================================================================
    # Retry decisions
    # =========================================================================

    def should_retry(self, error: ClassifiedError, attempt: int) -> bool:
        return self.policy.should_retry(error, attempt)

    def delay_for(self, attempt: int, error: ClassifiedError) -> float:
        return self.policy.get_delay(attempt, error.retry_after, self._rng)
