#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
LLM Router - Strategy-driven selection and fallback across backends.
"""

from .core import PARALLEL_MODES, ParallelResult, Router, RouterConfig
from .strategies import STRATEGIES, Candidate, StrategyContext, get_strategy

__all__ = [
    'Router',
    'RouterConfig',
    'ParallelResult',
    'PARALLEL_MODES',
    'STRATEGIES',
    'Candidate',
    'StrategyContext',
    'get_strategy',
]
