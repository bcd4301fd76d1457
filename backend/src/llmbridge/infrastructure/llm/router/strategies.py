#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Routing strategies.

Each strategy is a pure function from the registered candidates to an
ordered fallback chain. The router drops open circuits afterwards; the
first remaining entry is the primary pick and the rest are tried in order
when the router falls back.
"""

import hashlib
import random
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..adapters.base import BackendDescriptor
from ..balancer import BackendHealth
from ..types import IRChatRequest


@dataclass(frozen=True)
class Candidate:
    name: str
    descriptor: BackendDescriptor
    health: BackendHealth


@dataclass
class StrategyContext:
    counter: int = 0
    rng: random.Random = field(default_factory=random.Random)
    backend: Optional[str] = None


Strategy = Callable[[List[Candidate], IRChatRequest, StrategyContext], List[Candidate]]


def _rotate(candidates: List[Candidate], offset: int) -> List[Candidate]:
    if not candidates:
        return []
    offset %= len(candidates)
    return candidates[offset:] + candidates[:offset]


def fallback(candidates: List[Candidate], request: IRChatRequest, ctx: StrategyContext) -> List[Candidate]:
    """Configuration order."""
    return list(candidates)


def round_robin(candidates: List[Candidate], request: IRChatRequest, ctx: StrategyContext) -> List[Candidate]:
    return _rotate(candidates, ctx.counter)


def weighted(candidates: List[Candidate], request: IRChatRequest, ctx: StrategyContext) -> List[Candidate]:
    """Weighted random order without replacement; zero-weight backends go last."""
    pool = [c for c in candidates if c.descriptor.weight > 0]
    ordered = []
    while pool:
        total = sum(c.descriptor.weight for c in pool)
        point = ctx.rng.uniform(0, total)
        running = 0.0
        for c in pool:
            running += c.descriptor.weight
            if point <= running:
                break
        ordered.append(c)
        pool.remove(c)
    return ordered + [c for c in candidates if c.descriptor.weight <= 0]


def cost(candidates: List[Candidate], request: IRChatRequest, ctx: StrategyContext) -> List[Candidate]:
    """Cheapest first; ties keep configuration order."""
    return sorted(candidates, key=lambda c: c.descriptor.cost)


def latency(candidates: List[Candidate], request: IRChatRequest, ctx: StrategyContext) -> List[Candidate]:
    """Lowest observed latency first; unmeasured backends go last."""
    return sorted(
        candidates,
        key=lambda c: (c.health.latency_ms is None, c.health.latency_ms or 0.0),
    )


def sticky(candidates: List[Candidate], request: IRChatRequest, ctx: StrategyContext) -> List[Candidate]:
    """Same session key, same backend while the candidate set is unchanged."""
    if not request.session_key:
        return round_robin(candidates, request, ctx)
    digest = hashlib.sha256(request.session_key.encode()).hexdigest()
    ordered = sorted(candidates, key=lambda c: c.name)
    return _rotate(ordered, int(digest[:8], 16))


def manual(candidates: List[Candidate], request: IRChatRequest, ctx: StrategyContext) -> List[Candidate]:
    return [c for c in candidates if c.name == ctx.backend]


STRATEGIES: Dict[str, Strategy] = {
    "fallback": fallback,
    "round_robin": round_robin,
    "weighted": weighted,
    "cost": cost,
    "latency": latency,
    "sticky": sticky,
    "manual": manual,
}


def get_strategy(name: str) -> Strategy:
    if name not in STRATEGIES:
        raise ValueError(f"Unknown routing strategy '{name}'. Available: {list(STRATEGIES)}")
    return STRATEGIES[name]
