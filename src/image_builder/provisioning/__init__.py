"""Provisioning pipeline: poller, error classification, steps and runner."""

from .fallback import ZoneFallback, candidate_zones
from .poller import Backoff, EvalResult, wait_for_expected
from .retry_codes import DEFAULT_RETRY_CODES, ErrorClass, RetryCodes, classify
from .runner import PipelineResult, PipelineRunner
from .state import BuildState

__all__ = [
    "Backoff",
    "BuildState",
    "DEFAULT_RETRY_CODES",
    "ErrorClass",
    "EvalResult",
    "PipelineResult",
    "PipelineRunner",
    "RetryCodes",
    "ZoneFallback",
    "candidate_zones",
    "classify",
    "wait_for_expected",
]
