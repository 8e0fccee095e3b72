"""Prometheus metrics for the agent-node execution core."""

from prometheus_client import Counter, Histogram, Info, generate_latest

APP_INFO = Info("agentflow", "Agent workflow engine info")
APP_INFO.info({"version": "0.1.0", "name": "agentflow"})

AGENT_NODE_RUNS = Counter(
    "agent_node_runs_total",
    "Agent node executions by outcome",
    ["provider", "status"],
)

PROVIDER_CALLS = Counter(
    "provider_calls_total",
    "Outbound LLM provider calls",
    ["provider", "strategy"],
)

LLM_TOKENS = Counter(
    "llm_tokens_total",
    "Token usage reported by providers",
    ["provider", "direction"],
)

RATE_LIMIT_RETRIES = Counter(
    "rate_limit_retries_total",
    "Retries scheduled after a provider rate-limit rejection",
    ["provider"],
)

TOKEN_WAIT_TIMEOUTS = Counter(
    "rate_limit_token_timeouts_total",
    "Local token-bucket waits that exceeded their timeout",
    ["provider"],
)

TOKEN_WAIT_SECONDS = Histogram(
    "rate_limit_token_wait_seconds",
    "Time spent waiting for a local token-bucket token",
    ["provider"],
    buckets=[0.0, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

TOOL_CALLS = Counter(
    "tool_calls_total",
    "Client-managed tool server calls",
    ["status"],
)


def metrics_text() -> bytes:
    """Render all metrics in the Prometheus exposition format."""
    return generate_latest()
