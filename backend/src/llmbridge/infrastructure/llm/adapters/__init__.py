#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Adapters - Frontend formats and provider backends.

Importing this package registers the built-in provider codecs.
"""

from .base import BackendAdapter, BackendDescriptor, FrontendAdapter, ProviderType, get_codec
from .openai import OpenAIFrontend
from .anthropic import AnthropicFrontend

FRONTENDS = {
    OpenAIFrontend.name: OpenAIFrontend,
    AnthropicFrontend.name: AnthropicFrontend,
}

__all__ = [
    'BackendAdapter',
    'BackendDescriptor',
    'FrontendAdapter',
    'ProviderType',
    'get_codec',
    'OpenAIFrontend',
    'AnthropicFrontend',
    'FRONTENDS',
]
