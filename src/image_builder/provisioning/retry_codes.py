"""Transient-error classification for provider error codes.

The same resource reports different transient states depending on the
direction of the operation, so create-class and delete-class calls carry
independent retryable code sets. The tables are immutable; overrides are
built with ``dataclasses.replace`` and injected at construction.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping

from ..providers.errors import CloudAPIError, CloudTimeoutError
from .poller import EvalResult


class ErrorClass(enum.Enum):
    RETRYABLE = 'retryable'
    FATAL = 'fatal'


@dataclass(frozen=True, slots=True)
class OperationCodes:
    """Retryable codes for one resource kind, split by direction."""

    create: frozenset[str] = frozenset()
    delete: frozenset[str] = frozenset()


def _codes(*codes: str) -> frozenset[str]:
    return frozenset(codes)


_DEFAULT_OPERATIONS: Mapping[str, OperationCodes] = MappingProxyType(
    {
        'vpc': OperationCodes(
            create=_codes('TOKEN_PROCESSING'),
            delete=_codes(
                'DependencyViolation.Instance',
                'DependencyViolation.RouteEntry',
                'DependencyViolation.VSwitch',
                'DependencyViolation.SecurityGroup',
                'Forbbiden',
                'TaskConflict',
            ),
        ),
        'vswitch': OperationCodes(
            create=_codes('TOKEN_PROCESSING'),
            delete=_codes(
                'IncorrectVSwitchStatus',
                'DependencyViolation',
                'DependencyViolation.HaVip',
                'IncorrectRouteEntryStatus',
                'TaskConflict',
            ),
        ),
        'security_group': OperationCodes(
            create=_codes('IdempotentProcessing'),
            delete=_codes('DependencyViolation'),
        ),
        'instance': OperationCodes(
            create=_codes('IdempotentProcessing'),
            delete=_codes('IncorrectInstanceStatus.Initializing'),
        ),
        'image': OperationCodes(
            create=_codes('IdempotentProcessing'),
            delete=_codes('IncorrectImageStatus'),
        ),
    }
)


@dataclass(frozen=True, slots=True)
class RetryCodes:
    """All error-code tables the steps consult."""

    operations: Mapping[str, OperationCodes] = field(
        default_factory=lambda: _DEFAULT_OPERATIONS,
    )
    capacity: frozenset[str] = _codes('OperationDenied.NoStock', 'Zone.NotOnSale')
    describe: frozenset[str] = _codes(
        'Throttling',
        'Throttling.User',
        'ServiceUnavailable',
        'InternalError',
    )
    """Transient codes of status queries made while waiting."""
    not_found: frozenset[str] = _codes(
        'InvalidVpcID.NotFound',
        'InvalidVSwitchId.NotFound',
        'InvalidSecurityGroupId.NotFound',
        'InvalidInstanceId.NotFound',
        'InvalidImageId.NotFound',
    )

    def create(self, kind: str) -> frozenset[str]:
        return self._operation(kind).create

    def delete(self, kind: str) -> frozenset[str]:
        return self._operation(kind).delete

    def with_overrides(
        self,
        kind: str,
        *,
        create: frozenset[str] | None = None,
        delete: frozenset[str] | None = None,
    ) -> RetryCodes:
        """Return a copy with one resource kind's code sets replaced."""
        current = self.operations.get(kind, OperationCodes())
        updated = OperationCodes(
            create=current.create if create is None else frozenset(create),
            delete=current.delete if delete is None else frozenset(delete),
        )
        merged = dict(self.operations)
        merged[kind] = updated
        return RetryCodes(
            operations=MappingProxyType(merged),
            capacity=self.capacity,
            describe=self.describe,
            not_found=self.not_found,
        )

    def _operation(self, kind: str) -> OperationCodes:
        try:
            return self.operations[kind]
        except KeyError:
            raise KeyError(f'no retry codes configured for {kind!r}') from None


DEFAULT_RETRY_CODES = RetryCodes()


def classify(code: str | None, retryable_codes: frozenset[str]) -> ErrorClass:
    """Classify a provider error code against a retryable set."""
    if code is not None and code in retryable_codes:
        return ErrorClass.RETRYABLE
    return ErrorClass.FATAL


def is_capacity_error(error: BaseException, codes: RetryCodes) -> bool:
    return isinstance(error, CloudAPIError) and error.code in codes.capacity


# ── Evaluation functions ─────────────────────────────────────────────


def retryable_error_evaluator(
    retryable_codes: frozenset[str],
) -> Callable[[Any, BaseException | None], EvalResult]:
    """Succeed on no error, retry listed codes and transport errors."""

    def evaluate(response: Any, error: BaseException | None) -> EvalResult:
        if error is None:
            return EvalResult.SUCCESS
        if not isinstance(error, CloudAPIError) or isinstance(error, CloudTimeoutError):
            return EvalResult.RETRY
        if classify(error.code, retryable_codes) is ErrorClass.RETRYABLE:
            return EvalResult.RETRY
        return EvalResult.FAIL

    return evaluate


def not_found_evaluator(
    retryable_codes: frozenset[str],
    not_found_codes: frozenset[str],
) -> Callable[[Any, BaseException | None], EvalResult]:
    """Like ``retryable_error_evaluator`` but a vanished resource counts as deleted."""
    base = retryable_error_evaluator(retryable_codes)

    def evaluate(response: Any, error: BaseException | None) -> EvalResult:
        if isinstance(error, CloudAPIError) and error.code in not_found_codes:
            return EvalResult.SUCCESS
        return base(response, error)

    return evaluate


def status_evaluator(
    expected: str | frozenset[str],
    *,
    extract: Callable[[Any], str | None],
    retryable: frozenset[str] = frozenset(),
    on_match: Callable[[Any], None] | None = None,
) -> Callable[[Any, BaseException | None], EvalResult]:
    """Succeed once ``extract(response)`` reports an expected terminal status.

    A failed describe call is retried only for transport errors and the
    ``retryable`` codes; any other provider error ends the wait. ``on_match``
    may record the matching response; it does not influence the retry
    decision.
    """
    targets = frozenset({expected}) if isinstance(expected, str) else expected
    on_error = retryable_error_evaluator(retryable)

    def evaluate(response: Any, error: BaseException | None) -> EvalResult:
        if error is not None:
            return on_error(response, error)
        if extract(response) in targets:
            if on_match is not None:
                on_match(response)
            return EvalResult.SUCCESS
        return EvalResult.RETRY

    return evaluate
