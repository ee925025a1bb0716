"""Durable stores: JSON documents under the worker state directory."""

from src.store.follows import FollowStore
from src.store.persistent import JsonStore
from src.store.post_sessions import PostSessionStore
from src.store.queue import QueueStore
from src.store.registry import AgentRegistryStore
from src.store.sessions import SessionStore

__all__ = [
    "AgentRegistryStore",
    "FollowStore",
    "JsonStore",
    "PostSessionStore",
    "QueueStore",
    "SessionStore",
]
