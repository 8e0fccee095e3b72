from agentflow.store.base import ExecutionStore
from agentflow.store.memory import InMemoryStore

__all__ = ["ExecutionStore", "InMemoryStore"]
