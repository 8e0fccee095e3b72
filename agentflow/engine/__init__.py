"""Agent-node execution core.

Runs a single agent step of a workflow against LLM providers with:
  - Token Bucket rate limiting (one bucket per provider, lock-free)
  - Prompt Optimizer (deterministic shrinking before any call)
  - Tool Resolver (MCP server references resolved at call time)
  - Provider Dispatcher (server-managed or client-managed tool use)
  - Retry/Backoff Controller (429-aware exponential backoff)
  - Approval Gate (pending -> approved/rejected, polled)
"""
