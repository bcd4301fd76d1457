#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
llmbridge - Universal adapter gateway for chat LLM providers.

Callers speak one provider's format (OpenAI or Anthropic); requests are
normalized to a provider-neutral IR, routed to any configured backend and
answered in the caller's format.
"""

__version__ = "0.1.0"
