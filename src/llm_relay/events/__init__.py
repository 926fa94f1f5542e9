"""Lifecycle event bus for llm-relay."""

from llm_relay.events.bus import EventBus

__all__ = ["EventBus"]
