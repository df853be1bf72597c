"""Retry/error classification shared by every sync path."""

from core.retry.classifier import ErrorClassifier, RetryPolicy

__all__ = ["ErrorClassifier", "RetryPolicy"]
