"""Bundle execution: resolve agent -> output pairings and run them.

A run unit is one agent node paired with the first output node it reaches
inside its bundle. Units move idle -> processing -> succeeded | failed. A
unit failure is recorded on its output node and never aborts its siblings;
a bundle run itself never raises for execution problems.

The provider exchange follows the two-pass tool pattern:

    list_tools -> complete -> [run_tools -> complete]

Every bundle run holds a single run lock, so bundles never run
concurrently and ``run_all_bundles`` executes them strictly in creation
order.
"""

import asyncio
import time
from typing import Any

import structlog

from agents.config_service import AgentConfigService, is_number
from agents.tool_runner import (
    ToolRunnerClient,
    classify_provider_error,
    format_assistant_message_with_tools,
)
from config import settings
from events import EventType, WorkflowEvent
from models.execution import (
    BundleRunResult,
    ExecutionErrorKind,
    ResponseEnvelope,
    UnitResult,
    UnitStatus,
)
from models.graph import Bundle, Node, NodeRole, NodeStatus
from workflow.bundles import BundleManager
from workflow.graph import GraphModel

logger = structlog.get_logger()

RETRYABLE_ERRORS = frozenset({ExecutionErrorKind.RATE_LIMITED, ExecutionErrorKind.TIMED_OUT})
MAX_RETRY_BACKOFF_SECONDS = 4.0


class MissingVariableError(ValueError):
    """The effective prompt of an agent could not be built."""

    def __init__(self, names: list[str], message: str | None = None) -> None:
        super().__init__(message or f"Missing required variables: {', '.join(names)}")
        self.names = names


class ExecutionEngine:
    """Runs bundles of one workspace against a ToolRunnerClient.

    Attributes:
        graph: The workspace graph
        bundles: The workspace bundle manager
        client: Injected LLM + tool provider
        config_service: Used for variable extraction and substitution
    """

    def __init__(
        self,
        graph: GraphModel,
        bundles: BundleManager,
        client: ToolRunnerClient,
        config_service: AgentConfigService | None = None,
        default_model: str | None = None,
        retry_delay_seconds: float | None = None,
    ) -> None:
        self.graph = graph
        self.bundles = bundles
        self.client = client
        self.config_service = config_service or AgentConfigService()
        self.default_model = default_model or settings.default_model
        self.retry_delay_seconds = (
            retry_delay_seconds
            if retry_delay_seconds is not None
            else settings.provider_retry_delay_seconds
        )
        self._run_lock = asyncio.Lock()
        self._cancel_requested = False

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    async def _publish(
        self,
        event_type: EventType,
        node_id: str | None = None,
        bundle_id: int | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        if self.graph.event_bus is None:
            return
        await self.graph.event_bus.publish(
            WorkflowEvent(
                type=event_type,
                workspace_id=self.graph.workspace_id,
                node_id=node_id,
                bundle_id=bundle_id,
                data=data or {},
            )
        )

    async def _async_sleep(self, seconds: float) -> None:
        """Wait between retries. Tests patch this to avoid real delays."""
        await asyncio.sleep(seconds)

    # ------------------------------------------------------------------
    # Client and cancellation
    # ------------------------------------------------------------------

    async def initialize_client(
        self,
        provider_key: str,
        tool_provider_key: str,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Hand credentials to the client. The engine does not keep them."""
        initialized = await self.client.initialize(provider_key, tool_provider_key, metadata)
        logger.info(
            "tool_runner_client_initialized",
            workspace_id=self.graph.workspace_id,
            success=initialized,
        )
        return initialized

    def request_cancel(self, pending: bool = False) -> None:
        """Ask the current run to stop before its next unit.

        The unit in flight finishes; units not yet started fail with
        ``cancelled`` and no further bundles are started.

        Args:
            pending: Record the request even though no run holds the lock
                yet. Used for a run that is scheduled but has not started;
                it then begins cancelled.
        """
        if self.is_running or pending:
            self._cancel_requested = True
            logger.info(
                "run_cancel_requested",
                workspace_id=self.graph.workspace_id,
                pending=not self.is_running,
            )

    def clear_cancel(self) -> None:
        """Drop a recorded cancel request that no run has consumed."""
        if not self.is_running:
            self._cancel_requested = False

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_output(self, bundle: Bundle, agent: Node) -> Node | None:
        """First output node the agent reaches without leaving the bundle."""
        for node in self.graph.reachable_within(agent.id, bundle.node_ids):
            if node.role == NodeRole.OUTPUT:
                return node
        return None

    def build_prompt(self, agent: Node) -> str:
        """Effective prompt for an agent node.

        YAML agents merge node-local variables over ``agent_config.vars`` and
        require every prompt variable to have a non-empty value.

        Raises:
            MissingVariableError: If a required variable is unresolved or the
                prompt is empty
        """
        if agent.role == NodeRole.YAML_AGENT and agent.agent_config is not None:
            config = agent.agent_config
            merged = {**config.vars, **agent.variables}
            variables = self.config_service.extract_variables(
                config.model_copy(update={"vars": merged})
            )
            missing = [
                variable.name
                for variable in variables
                if variable.required and merged.get(variable.name) in (None, "")
            ]
            if missing:
                raise MissingVariableError(missing)
            prompt = self.config_service.substitute(config.prompt or "", merged)
        else:
            prompt = self.config_service.substitute(agent.prompt_template or "", agent.variables)

        if not prompt.strip():
            raise MissingVariableError(["prompt"], "Agent prompt is empty")
        return prompt

    def _model_for(self, agent: Node) -> str:
        if agent.model:
            return agent.model
        if agent.agent_config is not None and agent.agent_config.model:
            return agent.agent_config.model
        return self.default_model

    @staticmethod
    def _limits_for(agent: Node) -> tuple[float | None, int]:
        """Per-agent (timeout seconds, retry count) from its AgentConfig."""
        config = agent.agent_config
        if config is None:
            return None, 0
        timeout = float(config.timeout) if is_number(config.timeout) else None
        retries = config.retries if is_number(config.retries) else 0
        return timeout, max(int(retries), 0)

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    async def run_bundle(self, bundle_id: int) -> BundleRunResult:
        """Run every unit of one bundle.

        Raises:
            BundleNotFoundError: If the bundle does not exist
        """
        self.bundles.require_bundle(bundle_id)
        async with self._run_lock:
            try:
                return await self._run_bundle(bundle_id)
            finally:
                self._cancel_requested = False

    async def run_all_bundles(self) -> list[BundleRunResult]:
        """Run all bundles one after another, in creation order."""
        async with self._run_lock:
            bundle_ids = [bundle.id for bundle in self.bundles.bundles]
            await self._publish(EventType.RUN_ALL_STARTED, data={"bundle_ids": bundle_ids})
            logger.info(
                "run_all_started",
                workspace_id=self.graph.workspace_id,
                bundle_count=len(bundle_ids),
            )

            results: list[BundleRunResult] = []
            try:
                for bundle_id in bundle_ids:
                    if self._cancel_requested:
                        break
                    if self.bundles.get_bundle(bundle_id) is None:
                        continue
                    results.append(await self._run_bundle(bundle_id))
                cancelled = self._cancel_requested
            finally:
                self._cancel_requested = False

            await self._publish(
                EventType.RUN_ALL_COMPLETE,
                data={"bundles_run": len(results), "cancelled": cancelled},
            )
            logger.info(
                "run_all_complete",
                workspace_id=self.graph.workspace_id,
                bundles_run=len(results),
                cancelled=cancelled,
            )
            return results

    async def _run_bundle(self, bundle_id: int) -> BundleRunResult:
        """Run one bundle. The run lock must be held."""
        bundle = self.bundles.require_bundle(bundle_id)
        result = BundleRunResult(bundle_id=bundle.id, bundle_name=bundle.name)
        log = logger.bind(workspace_id=self.graph.workspace_id, bundle_id=bundle.id)

        agents = self.bundles.agent_nodes(bundle.id)
        if not agents:
            result.error = ExecutionErrorKind.MISSING_AGENT
        elif not self.bundles.output_nodes(bundle.id):
            result.error = ExecutionErrorKind.MISSING_OUTPUT
        if result.error is not None:
            log.warning("bundle_run_rejected", error_kind=result.error.value)
            result.completed_at = time.time()
            await self._publish_complete(result)
            return result

        self.bundles.set_running(bundle.id, True)
        await self._publish(
            EventType.BUNDLE_RUN_STARTED,
            bundle_id=bundle.id,
            data={"agent_node_ids": [agent.id for agent in agents]},
        )
        log.info("bundle_run_started", agent_count=len(agents))

        try:
            for agent in agents:
                if self._cancel_requested:
                    unit = await self._cancel_unit(bundle, agent)
                else:
                    unit = await self._run_unit(bundle, agent)
                result.units.append(unit)
        finally:
            if self.bundles.get_bundle(bundle.id) is not None:
                self.bundles.set_running(bundle.id, False)

        if self._cancel_requested:
            await self._publish(
                EventType.RUN_CANCELLED,
                bundle_id=bundle.id,
                data={"cancelled_units": sum(
                    1 for unit in result.units if unit.error_kind == ExecutionErrorKind.CANCELLED
                )},
            )

        result.completed_at = time.time()
        log.info(
            "bundle_run_complete",
            succeeded=len(result.succeeded),
            failed=len(result.failed),
            duration_seconds=round(result.completed_at - result.started_at, 3),
        )
        await self._publish_complete(result)
        return result

    async def _publish_complete(self, result: BundleRunResult) -> None:
        await self._publish(
            EventType.BUNDLE_RUN_COMPLETE,
            bundle_id=result.bundle_id,
            data={
                "succeeded": len(result.succeeded),
                "failed": len(result.failed),
                "error": result.error.value if result.error else None,
            },
        )

    async def _fail_unit(
        self,
        unit: UnitResult,
        kind: ExecutionErrorKind,
        message: str,
    ) -> UnitResult:
        unit.status = UnitStatus.FAILED
        unit.error_kind = kind
        unit.error_message = message
        if unit.output_node_id is not None and self.graph.has_node(unit.output_node_id):
            self.graph.set_status(
                unit.output_node_id, NodeStatus.ERROR, error_kind=kind, error_message=message
            )
        await self._publish(
            EventType.UNIT_FAILED,
            node_id=unit.output_node_id or unit.agent_node_id,
            data={
                "agent_node_id": unit.agent_node_id,
                "output_node_id": unit.output_node_id,
                "error_kind": kind.value,
                "error": message,
            },
        )
        return unit

    async def _cancel_unit(self, bundle: Bundle, agent: Node) -> UnitResult:
        output = self.resolve_output(bundle, agent)
        unit = UnitResult(
            agent_node_id=agent.id,
            output_node_id=output.id if output is not None else None,
        )
        return await self._fail_unit(unit, ExecutionErrorKind.CANCELLED, "Run cancelled")

    async def _run_unit(self, bundle: Bundle, agent: Node) -> UnitResult:
        unit = UnitResult(agent_node_id=agent.id)
        log = logger.bind(
            workspace_id=self.graph.workspace_id,
            bundle_id=bundle.id,
            agent_node_id=agent.id,
        )

        output = self.resolve_output(bundle, agent)
        if output is None:
            log.warning("unit_unconnected")
            return await self._fail_unit(
                unit,
                ExecutionErrorKind.UNCONNECTED,
                f"Agent {agent.id} is not connected to an output node in bundle {bundle.name}",
            )

        unit.output_node_id = output.id
        unit.status = UnitStatus.PROCESSING
        self.graph.set_status(output.id, NodeStatus.PROCESSING)
        await self._publish(
            EventType.UNIT_STARTED,
            node_id=output.id,
            bundle_id=bundle.id,
            data={"agent_node_id": agent.id, "output_node_id": output.id},
        )

        try:
            prompt = self.build_prompt(agent)
        except MissingVariableError as e:
            log.warning("unit_missing_variables", variables=e.names)
            return await self._fail_unit(unit, ExecutionErrorKind.MISSING_VARIABLE, str(e))

        model = self._model_for(agent)
        timeout, retries = self._limits_for(agent)

        for attempt in range(retries + 1):
            unit.attempts = attempt + 1
            try:
                exchange = self._exchange(prompt, model, output.id, bundle.id)
                if timeout is not None:
                    content, tool_call_count = await asyncio.wait_for(exchange, timeout)
                else:
                    content, tool_call_count = await exchange
                break
            except Exception as e:
                kind = classify_provider_error(e)
                message = str(e) or type(e).__name__
                if kind == ExecutionErrorKind.TIMED_OUT and timeout is not None:
                    message = f"Provider exchange exceeded {timeout:g}s"
                if kind in RETRYABLE_ERRORS and attempt < retries and not self._cancel_requested:
                    delay = min(self.retry_delay_seconds * 2**attempt, MAX_RETRY_BACKOFF_SECONDS)
                    log.warning(
                        "unit_retrying",
                        error_kind=kind.value,
                        attempt=attempt + 1,
                        delay_seconds=delay,
                    )
                    await self._async_sleep(delay)
                    continue
                log.error("unit_failed", error_kind=kind.value, error=message, attempts=attempt + 1)
                return await self._fail_unit(unit, kind, message)

        envelope = self._envelope(agent, bundle, model, tool_call_count)
        self.graph.update_node(output.id, runtime_output=content, response=envelope)
        self.graph.set_status(output.id, NodeStatus.READY)
        unit.status = UnitStatus.SUCCEEDED
        unit.output = content

        log.info("unit_succeeded", output_length=len(content), tool_call_count=tool_call_count)
        await self._publish(
            EventType.UNIT_SUCCEEDED,
            node_id=output.id,
            bundle_id=bundle.id,
            data={
                "agent_node_id": agent.id,
                "output_node_id": output.id,
                "response": envelope.model_dump(mode="json"),
            },
        )
        return unit

    async def _exchange(
        self,
        prompt: str,
        model: str,
        output_node_id: str,
        bundle_id: int,
    ) -> tuple[str, int]:
        """One provider exchange. Returns (content, tool call count)."""
        messages: list[dict[str, Any]] = [{"role": "user", "content": prompt}]
        tools = await self.client.list_tools()
        response = await self.client.complete(messages, model, tools=tools or None)
        if not response.tool_calls:
            return response.content, 0

        await self._publish(
            EventType.UNIT_TOOLS_INVOKED,
            node_id=output_node_id,
            bundle_id=bundle_id,
            data={"tools": [call.name for call in response.tool_calls]},
        )
        tool_results = await self.client.run_tools(response)
        messages.append(format_assistant_message_with_tools(response.content, response.tool_calls))
        messages.extend(tool_results)

        final = await self.client.complete(messages, model)
        return final.content, len(response.tool_calls)

    @staticmethod
    def _envelope(agent: Node, bundle: Bundle, model: str, tool_call_count: int) -> ResponseEnvelope:
        config = agent.agent_config
        return ResponseEnvelope(
            agent_title=(config.title if config and config.title else agent.label or agent.id),
            agent_id=(config.id if config and config.id else agent.id),
            bundle=bundle.name,
            used_tools=tool_call_count > 0,
            tool_call_count=tool_call_count,
            model=model,
        )
