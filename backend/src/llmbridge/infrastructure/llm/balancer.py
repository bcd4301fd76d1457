#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import logging
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Callable, Deque, Dict, Iterable, Optional

logger = logging.getLogger(__name__)


class CircuitState:
	CLOSED = "closed"
	OPEN = "open"
	HALF_OPEN = "half_open"


class Admission:
	REFUSED = "refused"
	ADMITTED = "admitted"
	PROBE = "probe"


class BalancerConfig:
	def __init__(self, failure_threshold: int = 5, error_rate_threshold: float = 0.5, error_window: int = 20,
				 min_samples: int = 10, circuit_timeout: float = 60.0, latency_alpha: float = 0.3):
		self.failure_threshold = failure_threshold
		self.error_rate_threshold = error_rate_threshold
		self.error_window = error_window
		self.min_samples = min_samples
		self.circuit_timeout = circuit_timeout
		self.latency_alpha = latency_alpha


@dataclass(frozen=True)
class BackendHealth:
	"""Point-in-time copy of one backend's health record."""
	name: str
	state: str
	consecutive_failures: int
	error_rate: float
	latency_ms: Optional[float]
	total_requests: int
	successful_requests: int
	failed_requests: int
	opened_at: Optional[float]
	probe_in_flight: bool

	def to_dict(self) -> Dict[str, Any]:
		return asdict(self)


class BackendStats:
	def __init__(self, name: str, window: int):
		self.name = name
		self.total_requests = 0
		self.successful_requests = 0
		self.failed_requests = 0
		self.consecutive_failures = 0
		self.outcomes: Deque[bool] = deque(maxlen=window)
		self.latency_ms: Optional[float] = None
		self.last_success_time: Optional[float] = None
		self.last_failure_time: Optional[float] = None
		self.circuit_open_time: Optional[float] = None
		self.state = CircuitState.CLOSED
		self.probe_in_flight = False

	@property
	def error_rate(self) -> float:
		if not self.outcomes:
			return 0.0
		return self.outcomes.count(False) / len(self.outcomes)


class HealthTable:
	"""
	Shared, mutable health record for every backend a router knows.

	Every transition happens under one lock and no method awaits, so
	concurrent requests observe a consistent state machine:

	    closed --(threshold reached)--> open --(cooldown elapsed, one probe)--> half_open
	    half_open --(probe succeeds)--> closed
	    half_open --(probe fails)--> open
	"""

	def __init__(self, names: Iterable[str] = (), config: Optional[BalancerConfig] = None,
				 clock: Callable[[], float] = time.monotonic):
		self.config = config or BalancerConfig()
		self._clock = clock
		self._lock = threading.RLock()
		self._stats: Dict[str, BackendStats] = {}
		for name in names:
			self.register(name)

	def register(self, name: str) -> None:
		with self._lock:
			if name not in self._stats:
				self._stats[name] = BackendStats(name, self.config.error_window)

	def _get(self, name: str) -> BackendStats:
		stats = self._stats.get(name)
		if stats is None:
			stats = self._stats[name] = BackendStats(name, self.config.error_window)
		return stats

	def _cooled_down(self, stats: BackendStats) -> bool:
		return stats.circuit_open_time is not None and \
			(self._clock() - stats.circuit_open_time) >= self.config.circuit_timeout

	def state(self, name: str) -> str:
		with self._lock:
			return self._get(name).state

	def is_available(self, name: str) -> bool:
		"""True if a call to `name` could be admitted right now. Does not change state."""
		with self._lock:
			stats = self._get(name)
			if stats.state == CircuitState.CLOSED:
				return True
			if stats.state == CircuitState.OPEN:
				return self._cooled_down(stats)
			return not stats.probe_in_flight

	def acquire(self, name: str) -> str:
		"""
		Admit one call to `name`, returning an `Admission` value.

		Closed circuits always admit. An open circuit whose cooldown has
		elapsed moves to half-open and admits exactly one probe; every other
		caller is refused until that probe reports back.
		"""
		with self._lock:
			stats = self._get(name)
			if stats.state == CircuitState.CLOSED:
				return Admission.ADMITTED
			if stats.state == CircuitState.OPEN:
				if not self._cooled_down(stats):
					return Admission.REFUSED
				stats.state = CircuitState.HALF_OPEN
				logger.info(f"Circuit half-open for backend {name}, admitting probe")
			if stats.probe_in_flight:
				return Admission.REFUSED
			stats.probe_in_flight = True
			return Admission.PROBE

	def release(self, name: str) -> None:
		"""Give back an admitted probe without an outcome (cancelled call)."""
		with self._lock:
			self._get(name).probe_in_flight = False

	def report_success(self, name: str, latency_ms: Optional[float] = None) -> None:
		with self._lock:
			stats = self._get(name)
			stats.total_requests += 1
			stats.successful_requests += 1
			stats.consecutive_failures = 0
			stats.outcomes.append(True)
			stats.last_success_time = time.time()
			if latency_ms is not None:
				alpha = self.config.latency_alpha
				stats.latency_ms = latency_ms if stats.latency_ms is None else \
					alpha * latency_ms + (1 - alpha) * stats.latency_ms
			if stats.state != CircuitState.CLOSED:
				logger.info(f"Circuit closed for backend {name}")
				stats.state = CircuitState.CLOSED
				stats.circuit_open_time = None
				stats.outcomes.clear()
			stats.probe_in_flight = False

	def report_failure(self, name: str) -> None:
		with self._lock:
			stats = self._get(name)
			stats.total_requests += 1
			stats.failed_requests += 1
			stats.consecutive_failures += 1
			stats.outcomes.append(False)
			stats.last_failure_time = time.time()
			if stats.state == CircuitState.HALF_OPEN:
				self._open(stats, "probe failed")
			elif stats.state == CircuitState.OPEN:
				# 熔断期间的失败（强制调用）重新计时
				stats.circuit_open_time = self._clock()
			elif stats.state == CircuitState.CLOSED:
				if stats.consecutive_failures >= self.config.failure_threshold:
					self._open(stats, f"{stats.consecutive_failures} consecutive failures")
				elif len(stats.outcomes) >= self.config.min_samples and \
						stats.error_rate >= self.config.error_rate_threshold:
					self._open(stats, f"error rate {stats.error_rate:.0%}")
			stats.probe_in_flight = False

	def _open(self, stats: BackendStats, reason: str) -> None:
		stats.state = CircuitState.OPEN
		stats.circuit_open_time = self._clock()
		stats.probe_in_flight = False
		logger.warning(f"Circuit opened for backend {stats.name}: {reason}")

	def open_circuit(self, name: str) -> None:
		with self._lock:
			self._open(self._get(name), "opened manually")

	def close_circuit(self, name: str) -> None:
		with self._lock:
			stats = self._get(name)
			stats.state = CircuitState.CLOSED
			stats.circuit_open_time = None
			stats.consecutive_failures = 0
			stats.probe_in_flight = False
			stats.outcomes.clear()

	def reset(self, name: Optional[str] = None) -> None:
		with self._lock:
			names = [name] if name else list(self._stats)
			for n in names:
				self._stats[n] = BackendStats(n, self.config.error_window)

	def snapshot(self, name: str) -> BackendHealth:
		with self._lock:
			s = self._get(name)
			return BackendHealth(
				name=s.name,
				state=s.state,
				consecutive_failures=s.consecutive_failures,
				error_rate=s.error_rate,
				latency_ms=s.latency_ms,
				total_requests=s.total_requests,
				successful_requests=s.successful_requests,
				failed_requests=s.failed_requests,
				opened_at=s.circuit_open_time,
				probe_in_flight=s.probe_in_flight,
			)

	def snapshots(self) -> Dict[str, BackendHealth]:
		with self._lock:
			return {name: self.snapshot(name) for name in self._stats}
