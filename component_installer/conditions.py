"""Tri-state readiness conditions and their aggregation.

Every layer of the system reports its readiness as a list of named conditions.
A `ConditionSet` manages a "happy" condition (`Ready`) whose value is derived
from a set of dependent conditions:

```python
conditions = ConditionSet([MANIFESTS_APPLIED, WORKLOADS_READY])
conditions.mark_true(MANIFESTS_APPLIED)
conditions.mark_unknown(WORKLOADS_READY, "Waiting", "1 of 3 items ready")
assert not conditions.ready()
```
"""

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
import datetime
from enum import StrEnum
import logging

from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig

__all__ = [
    "ConditionStatus",
    "Condition",
    "ConditionSet",
    "aggregate",
    "READY",
]

_LOGGER = logging.getLogger(__name__)

READY = "Ready"

Clock = Callable[[], datetime.datetime]


def utcnow() -> datetime.datetime:
    """Return the current time in UTC."""
    return datetime.datetime.now(datetime.timezone.utc)


class ConditionStatus(StrEnum):
    """Tri-state status of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition(DataClassDictMixin):
    """A named readiness signal with a machine readable reason."""

    type: str
    """The name of the condition e.g. Ready."""

    status: ConditionStatus = ConditionStatus.UNKNOWN
    """The tri-state value of the condition."""

    reason: str = ""
    """Machine readable CamelCase reason for the last transition."""

    message: str = ""
    """Human readable details."""

    last_transition_time: datetime.datetime | None = None
    """When the status last changed."""

    @property
    def is_true(self) -> bool:
        return self.status == ConditionStatus.TRUE

    @property
    def is_false(self) -> bool:
        return self.status == ConditionStatus.FALSE

    def __str__(self) -> str:
        if self.message:
            return f"{self.type}={self.status} ({self.reason}: {self.message})"
        return f"{self.type}={self.status}"

    class Config(BaseConfig):
        omit_none = True


class ConditionSet:
    """Manages a happy condition derived from a list of dependent conditions.

    The set operates on a list of `Condition` objects which it owns, typically
    a copy of a resource status. The happy condition is recomputed after every
    mark operation.
    """

    def __init__(
        self,
        dependents: Iterable[str],
        conditions: Iterable[Condition] | None = None,
        *,
        happy: str = READY,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize ConditionSet from existing conditions."""
        self._happy = happy
        self._dependents = list(dependents)
        self._clock = clock
        self._conditions: dict[str, Condition] = {}
        for condition in conditions or ():
            self._conditions[condition.type] = Condition(
                type=condition.type,
                status=condition.status,
                reason=condition.reason,
                message=condition.message,
                last_transition_time=condition.last_transition_time,
            )
        for cond_type in [self._happy, *self._dependents]:
            if cond_type not in self._conditions:
                self._set(Condition(type=cond_type))

    def get(self, cond_type: str) -> Condition | None:
        """Return the condition of the given type."""
        return self._conditions.get(cond_type)

    def ready(self) -> bool:
        """Return True if the happy condition is True."""
        happy = self._conditions[self._happy]
        return happy.is_true

    def happy(self) -> Condition:
        """Return the happy condition."""
        return self._conditions[self._happy]

    def conditions(self) -> list[Condition]:
        """Return all conditions, happy condition first then dependents in order."""
        ordered = [self._happy, *self._dependents]
        extra = sorted(set(self._conditions) - set(ordered))
        return [self._conditions[t] for t in ordered + extra]

    def mark_true(self, cond_type: str, reason: str = "", message: str = "") -> None:
        """Mark the condition True."""
        self._mark(cond_type, ConditionStatus.TRUE, reason, message)

    def mark_false(self, cond_type: str, reason: str, message: str = "") -> None:
        """Mark the condition False with a reason."""
        self._mark(cond_type, ConditionStatus.FALSE, reason, message)

    def mark_unknown(self, cond_type: str, reason: str, message: str = "") -> None:
        """Mark the condition Unknown with a reason."""
        self._mark(cond_type, ConditionStatus.UNKNOWN, reason, message)

    def _mark(
        self, cond_type: str, status: ConditionStatus, reason: str, message: str
    ) -> None:
        self._set(
            Condition(type=cond_type, status=status, reason=reason, message=message)
        )
        if cond_type != self._happy:
            self._recompute_happy()

    def _recompute_happy(self) -> None:
        dependents = [self._conditions[t] for t in self._dependents]
        for condition in dependents:
            if condition.is_false:
                self._set(
                    Condition(
                        type=self._happy,
                        status=ConditionStatus.FALSE,
                        reason=condition.reason,
                        message=condition.message,
                    )
                )
                return
        if all(condition.is_true for condition in dependents):
            self._set(Condition(type=self._happy, status=ConditionStatus.TRUE))
            return
        for condition in dependents:
            if not condition.is_true:
                self._set(
                    Condition(
                        type=self._happy,
                        status=ConditionStatus.UNKNOWN,
                        reason=condition.reason,
                        message=condition.message,
                    )
                )
                return

    def _set(self, condition: Condition) -> None:
        """Store the condition, only moving the timestamp on a status change."""
        existing = self._conditions.get(condition.type)
        if existing is not None and existing.status == condition.status:
            condition.last_transition_time = existing.last_transition_time
        else:
            condition.last_transition_time = self._clock()
            if existing is not None:
                _LOGGER.debug(
                    "Condition %s transitioned %s -> %s",
                    condition.type,
                    existing.status,
                    condition.status,
                )
        self._conditions[condition.type] = condition


def aggregate(
    members: Mapping[str, Iterable[Condition]],
    *,
    cond_type: str = READY,
) -> Condition:
    """Combine the happy conditions of several members into one condition.

    The result is True only if every member reports its `cond_type` condition
    True. Otherwise the first member that is False (or else the first that is
    not True) is named in the reason and message. No members is True.
    """
    not_ready: list[tuple[str, Condition]] = []
    for name, conditions in members.items():
        found = next((c for c in conditions if c.type == cond_type), None)
        if found is None:
            found = Condition(type=cond_type, reason="NoStatus")
        if not found.is_true:
            not_ready.append((name, found))
    if not not_ready:
        return Condition(type=cond_type, status=ConditionStatus.TRUE)
    failed = [(name, c) for name, c in not_ready if c.is_false]
    name, condition = (failed or not_ready)[0]
    message = f"{name} not ready"
    if condition.message:
        message = f"{message}: {condition.message}"
    return Condition(
        type=cond_type,
        status=ConditionStatus.FALSE if failed else ConditionStatus.UNKNOWN,
        reason=condition.reason or "NotReady",
        message=message,
    )
