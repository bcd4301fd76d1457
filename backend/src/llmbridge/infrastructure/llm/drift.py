#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Drift tracking - append-only record of what translation changed or dropped.
"""

import logging
import threading
from typing import Any, Iterable, Optional, Tuple

from .types import DriftFidelity, DriftNotice, DriftStage

logger = logging.getLogger(__name__)


class DriftLog:
    """Per-call collector of drift notices. Entries can be added, never removed."""

    def __init__(self, notices: Iterable[DriftNotice] = ()):
        self._notices = list(notices)
        self._lock = threading.Lock()

    def add(self, notice: DriftNotice) -> DriftNotice:
        with self._lock:
            if notice not in self._notices:
                self._notices.append(notice)
        logger.debug(f"drift[{notice.stage.value}] {notice.field}: {notice.reason}")
        return notice

    def extend(self, notices: Iterable[DriftNotice]) -> None:
        for notice in notices:
            self.add(notice)

    @property
    def notices(self) -> Tuple[DriftNotice, ...]:
        with self._lock:
            return tuple(self._notices)

    def fields(self) -> Tuple[str, ...]:
        return tuple(n.field for n in self.notices)

    def __len__(self) -> int:
        return len(self._notices)

    def __iter__(self):
        return iter(self.notices)


def dropped(field: str, stage: DriftStage, reason: str, original: Any = None,
            backend: Optional[str] = None) -> DriftNotice:
    return DriftNotice(
        field=field,
        stage=stage,
        fidelity=DriftFidelity.DROPPED,
        reason=reason,
        original=original,
        backend=backend,
    )


def approximated(field: str, stage: DriftStage, reason: str, original: Any,
                 translated: Any, backend: Optional[str] = None) -> DriftNotice:
    return DriftNotice(
        field=field,
        stage=stage,
        fidelity=DriftFidelity.APPROXIMATE,
        reason=reason,
        original=original,
        translated=translated,
        backend=backend,
    )


def clamp(field: str, value: Optional[float], low: float, high: float, drift: DriftLog,
          stage: DriftStage = DriftStage.EXECUTE, backend: Optional[str] = None) -> Optional[float]:
    """Clamp `value` into [low, high], recording an approximation when it moved."""
    if value is None:
        return None
    clamped = max(low, min(high, value))
    if clamped != value:
        drift.add(approximated(
            field, stage,
            f"{field}={value} outside supported range [{low}, {high}]",
            value, clamped, backend,
        ))
    return clamped
