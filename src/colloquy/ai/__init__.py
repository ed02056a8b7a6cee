"""AI transport, orchestration engine and tool wiring."""

from .client import AIClient, ApproxByteCounter, ClientSettings, TiktokenCounter, TokenCounterRegistry

__all__ = ["AIClient", "ClientSettings", "TokenCounterRegistry", "TiktokenCounter", "ApproxByteCounter"]
