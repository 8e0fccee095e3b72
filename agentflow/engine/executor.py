"""Agent node executor: the single entry point for running one agent step.

Pipeline:
  1. Substitute variables into the instructions
  2. Short-circuit with the configured mock response, if any
  3. Compact the transcript (prompt optimizer checkpoints)
  4. Resolve tool references and pick the dispatch strategy
  5. Dispatch under the retry controller (token bucket + backoff)
  6. Shape the output, transcript deltas and variable updates

Steps 1-4 run once per execution; only the dispatch is retried. Every failure
leaves ``execute`` as an ``AgentExecutionError`` subclass.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Mapping

from agentflow.core.config import settings
from agentflow.core.logging import log_context
from agentflow.core.metrics import AGENT_NODE_RUNS
from agentflow.engine.dispatcher import ProviderDispatcher, require_api_key, select_strategy
from agentflow.engine.errors import AgentExecutionError, ConfigurationError, ProviderError
from agentflow.engine.normalizer import parse_output
from agentflow.engine.optimizer import compact_messages
from agentflow.engine.retry import RetryController
from agentflow.engine.token_bucket import ProviderRateRegistry
from agentflow.engine.tool_resolver import ToolResolver, apply_credentials
from agentflow.engine.types import (
    AgentNodeResult,
    AgentNodeSpec,
    ChatMessage,
    DispatchRequest,
    DispatchResult,
    ExecutionState,
    parse_model,
)
from agentflow.engine.variables import substitute_variables

if TYPE_CHECKING:
    from agentflow.store.base import ExecutionStore

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = "Process the input"
MISSING_KEY_MESSAGE = "Missing API key. Please add your LLM provider key in Settings."

_NO_MOCK = object()


def resolve_mock_output(raw: str, node: AgentNodeSpec) -> Any:
    """Pick the mock output for a node from the raw mock setting.

    A JSON object is looked up by node id, then node name, then ``default``,
    falling back to the whole object. Anything that is not JSON is used as a
    plain string.
    """
    if not raw:
        return _NO_MOCK
    try:
        config: Any = json.loads(raw)
    except ValueError:
        return raw

    if isinstance(config, dict):
        for key in (node.node_id, node.node_name, "default"):
            if key and config.get(key) is not None:
                return config[key]
    return config


class AgentNodeExecutor:
    """Runs agent nodes against a shared rate registry and store."""

    def __init__(
        self,
        registry: ProviderRateRegistry,
        store: ExecutionStore,
        dispatcher: ProviderDispatcher | None = None,
        retry: RetryController | None = None,
        mock_response: str | None = None,
        default_model: str | None = None,
    ):
        self.registry = registry
        self.store = store
        self.resolver = ToolResolver(store)
        self.dispatcher = dispatcher or ProviderDispatcher(
            timeout=settings.provider_timeout_seconds,
            tool_timeout=settings.tool_server_timeout_seconds,
        )
        self.retry = retry or RetryController(
            registry,
            max_retries=settings.agent_max_retries,
            token_timeout=settings.rate_limit_token_timeout,
        )
        self.mock_response = settings.mock_agent_response if mock_response is None else mock_response
        self.default_model = default_model or settings.default_agent_model

    async def execute(
        self,
        node: AgentNodeSpec,
        state: ExecutionState,
        credentials: Mapping[str, str] | None,
        max_retries: int | None = None,
    ) -> AgentNodeResult:
        """Execute one agent node.

        Args:
            node: The agent node to run.
            state: Transcript and variables of the running workflow (read only).
            credentials: Provider id -> API key, plus auxiliary keys such as
                ``firecrawl`` used for tool URL placeholders.
            max_retries: Rate-limit retry budget, defaults to the controller's.

        Raises:
            AgentExecutionError: classified failure (see ``agentflow.engine.errors``).
        """
        model = node.model or self.default_model
        provider = parse_model(model)[0]
        label = self.registry.provider_label(provider)

        with log_context(node_id=node.node_id, execution_id=state.execution_id or None):
            try:
                return await self._execute(node, state, credentials, model, max_retries)
            except AgentExecutionError as e:
                AGENT_NODE_RUNS.labels(provider=label, status=e.error_code or "error").inc()
                logger.warning("Agent node %s failed: %s", node.node_id, e, extra={"provider": provider})
                raise
            except Exception as e:
                AGENT_NODE_RUNS.labels(provider=label, status="error").inc()
                logger.exception("Agent node %s failed", node.node_id, extra={"provider": provider})
                message = str(e) or e.__class__.__name__
                lowered = message.lower()
                if "api key" in lowered or "api_key" in lowered:
                    raise ConfigurationError(MISSING_KEY_MESSAGE) from e
                raise ProviderError(f"Agent execution failed: {message}") from e

    async def _execute(
        self,
        node: AgentNodeSpec,
        state: ExecutionState,
        credentials: Mapping[str, str] | None,
        model: str,
        max_retries: int | None,
    ) -> AgentNodeResult:
        if credentials is None:
            raise ConfigurationError(MISSING_KEY_MESSAGE)

        instructions = substitute_variables(node.instructions or DEFAULT_INSTRUCTIONS, state)
        provider, model_name = parse_model(model)

        mock_output = resolve_mock_output(self.mock_response, node)
        if mock_output is not _NO_MOCK:
            logger.info("Using mock response for agent node %s", node.node_id)
            AGENT_NODE_RUNS.labels(provider=self.registry.provider_label(provider), status="mock").inc()
            text = mock_output if isinstance(mock_output, str) else json.dumps(mock_output, ensure_ascii=False)
            return self._build_result(node, mock_output, text, DispatchResult(text=text, provider=provider))

        # Fail before spending a shared bucket token
        require_api_key(credentials, provider)

        messages = compact_messages(instructions, state.chat_history, node.include_chat_history)

        servers = await self.resolver.resolve(node.tool_refs)
        servers = [apply_credentials(server, credentials) for server in servers]
        strategy = select_strategy(provider, servers)

        request = DispatchRequest(provider=provider, model=model_name, messages=messages, strategy=strategy)
        dispatched = await self.retry.run(
            model,
            lambda: self.dispatcher.dispatch(request, credentials),
            max_retries=max_retries,
        )

        output = parse_output(dispatched.text, node.output_format)
        AGENT_NODE_RUNS.labels(provider=self.registry.provider_label(provider), status="success").inc()
        return self._build_result(node, output, dispatched.text, dispatched)

    @staticmethod
    def _build_result(node: AgentNodeSpec, output: Any, text: str, dispatched: DispatchResult) -> AgentNodeResult:
        chat_updates = (
            [
                ChatMessage(role="user", content=node.instructions),
                ChatMessage(role="assistant", content=text),
            ]
            if node.include_chat_history
            else []
        )
        return AgentNodeResult(
            output=output,
            tool_calls=list(dispatched.tool_invocations),
            chat_history_updates=chat_updates,
            variable_updates={"lastOutput": output},
            usage=dispatched.usage,
            model_version=dispatched.model_version,
        )
