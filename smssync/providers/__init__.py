"""Provider adapters for renting numbers and reading their messages."""

from smssync.providers.base import BaseProviderAdapter
from smssync.providers.registry import build_adapters

__all__ = ["BaseProviderAdapter", "build_adapters"]
