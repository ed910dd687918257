"""agentdesk: conversational orchestration over a per-user agent registry."""

__version__ = "0.1.0"
