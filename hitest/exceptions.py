"""Custom exceptions for hitest.

All hitest-specific exceptions inherit from HitestError for unified error handling.
Each exception preserves the original cause chain for debugging.

Note that failing, erroring or bogus *tests* are never signalled by raising:
their outcome is recorded in the TestResult. Exceptions are reserved for
problems of the surrounding machinery (files, config, runner).
"""

from __future__ import annotations

from typing import Any


class HitestError(Exception):
    """Base exception for all hitest errors.

    Attributes:
        message: Human-readable error description
        context: Optional dictionary with additional debugging context
        original_error: Original exception that caused this error (if any)
    """

    def __init__(
        self,
        message: str,
        *args: object,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, *args)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Return formatted error message with context if available."""
        base = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            base = f"{base} [{ctx_str}]"
        if self.original_error:
            base = f"{base} (caused by: {type(self.original_error).__name__}: {self.original_error})"
        return base

    def with_context(self, **kwargs: Any) -> "HitestError":
        """Add context to this error and return self for chaining."""
        self.context.update(kwargs)
        return self


class HitestConfigError(HitestError):
    """Raised when configuration is invalid or file cannot be loaded.

    Common causes:
    - Config or variables file not found
    - Invalid YAML syntax
    - Invalid field values (e.g. rate <= 0 in throughput mode)
    - Malformed -D name=value override
    """


class HitestLoadError(HitestError):
    """Raised when a declarative test or suite file cannot be turned into tests.

    Common causes:
    - File not found or unreadable
    - Invalid YAML/JSON syntax
    - Unknown check or extractor tag
    - Bad field types (e.g. non-list Params values)
    """


class HitestRunnerError(HitestError):
    """Raised when a run cannot be carried out at all.

    Common causes:
    - No enabled tests to drive a load test
    - A suite's Setup failed before a load test
    - Invalid load test options
    """


class RequestBuildError(HitestError):
    """Raised when a declarative Request cannot be turned into a concrete request.

    The executor maps this to status Bogus; no network call is made.
    """


class LoadTestAborted(HitestError):
    """Raised when the observed error rate of a load test exceeded the limit.

    The partial LoadTestResult collected until the abort is available as
    ``result``. All in-flight executions were drained before raising.
    """

    def __init__(self, message: str, *args: object, result: Any = None, **kwargs: Any) -> None:
        super().__init__(message, *args, **kwargs)
        self.result = result
