"""Wire-format translators between the canonical model and each provider API.

Each submodule exposes ``build_request``, ``parse_response`` and
``parse_models`` plus the tool/message converters they are built from.
"""

from . import anthropic, gemini, openai

__all__ = ["anthropic", "gemini", "openai"]
