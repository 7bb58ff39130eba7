"""
Channel adapters.

Provides one adapter per supported channel (web chat, Telegram, GitHub job
notifications) behind a common interface, so the dispatch orchestrator stays
channel-agnostic.
"""
