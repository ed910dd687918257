"""Conversational orchestration core: quota ledger, registry view, matcher,
suggestion/decision coordinator and response streamer."""
