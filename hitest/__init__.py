"""
hitest - HTTP test execution and load testing engine.

Declarative tests (request plus ordered checks) run against live endpoints,
grouped into suites with Setup/Main/Teardown phases and variable chaining,
and replayed as throughput or concurrency load tests with log-bucket
latency histograms.
"""

from .exceptions import (
    HitestConfigError,
    HitestError,
    HitestLoadError,
    HitestRunnerError,
    LoadTestAborted,
    RequestBuildError,
)

__all__ = [
    "__version__",
    "HitestConfigError",
    "HitestError",
    "HitestLoadError",
    "HitestRunnerError",
    "LoadTestAborted",
    "RequestBuildError",
]

__version__ = "1.0.0"
