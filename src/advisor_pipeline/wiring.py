"""Explicit assembly of the pipeline's service handles."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from advisor_pipeline.advisors.base import AdvisorRegistry
from advisor_pipeline.advisors.logger import LoggingAdvisor
from advisor_pipeline.advisors.memory import MemoryAdvisor
from advisor_pipeline.advisors.retrieval import RetrievalAdvisor
from advisor_pipeline.advisors.tool_dispatch import ToolDispatchAdvisor
from advisor_pipeline.advisors.usage_audit import UsageAuditAdvisor
from advisor_pipeline.config import PipelineConfig
from advisor_pipeline.evaluation.evaluators import Evaluator, FactCheckingEvaluator
from advisor_pipeline.evaluation.retry import SelfEvaluatingResponder
from advisor_pipeline.executor import AdvisorChainExecutor
from advisor_pipeline.memory.store import ConversationMemoryStore, ConversationPersistence
from advisor_pipeline.model.base import ChatModel
from advisor_pipeline.obs.tracing import InMemoryAuditSink, ObservabilitySink
from advisor_pipeline.retrieval.augmentor import RetrievalAugmentor
from advisor_pipeline.retrieval.vector_index import VectorIndex
from advisor_pipeline.tools.builtin import register_builtin_tools
from advisor_pipeline.tools.registry import ToolRegistry
from advisor_pipeline.tools.tickets import TicketRepository

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class PipelineComponents:
    executor: AdvisorChainExecutor
    responder: SelfEvaluatingResponder
    memory_store: ConversationMemoryStore
    tool_registry: ToolRegistry
    advisor_registry: AdvisorRegistry
    sink: ObservabilitySink
    ticket_repository: TicketRepository | None = None


def build_pipeline(
    config: PipelineConfig | None = None,
    *,
    model: ChatModel,
    vector_index: VectorIndex | None = None,
    tool_registry: ToolRegistry | None = None,
    persistence: ConversationPersistence | None = None,
    sink: ObservabilitySink | None = None,
    evaluator: Evaluator | None = None,
    ticket_repository: TicketRepository | None = None,
) -> PipelineComponents:
    """Build the executor and its collaborators in ``config.advisors`` order.

    When no ``tool_registry`` is given, one is created with the built-in help
    desk and time tools. The registry is frozen before it is returned. The
    ``retrieval`` advisor is left out when no vector index is supplied.
    """
    config = config or PipelineConfig()
    sink = sink if sink is not None else InMemoryAuditSink()
    timeouts = config.timeouts

    if tool_registry is None:
        tool_registry = ToolRegistry()
        ticket_repository = ticket_repository or TicketRepository()
        register_builtin_tools(tool_registry, ticket_repository)
    tool_registry.freeze()

    memory_store = ConversationMemoryStore(
        persistence, config.memory, io_timeout=timeouts.memory_seconds
    )

    advisor_registry = AdvisorRegistry()
    advisor_registry.register(LoggingAdvisor())
    advisor_registry.register(MemoryAdvisor(memory_store))
    if vector_index is not None:
        augmentor = RetrievalAugmentor(
            vector_index, config.retrieval, timeout_seconds=timeouts.retrieval_seconds
        )
        advisor_registry.register(RetrievalAdvisor(augmentor))
    advisor_registry.register(
        ToolDispatchAdvisor(
            tool_registry, config.tools, tool_timeout=timeouts.tool_seconds, sink=sink
        )
    )
    advisor_registry.register(UsageAuditAdvisor(sink))

    names = [
        name
        for name in config.advisors
        if vector_index is not None or name != RetrievalAdvisor.name
    ]
    advisors = advisor_registry.build(names)

    executor = AdvisorChainExecutor(
        model,
        advisors,
        memory_store=memory_store,
        timeouts=timeouts,
        system_prompt=config.system_prompt,
    )
    responder = SelfEvaluatingResponder(
        executor,
        evaluator or FactCheckingEvaluator(model),
        config.retry,
        evaluator_timeout=timeouts.evaluator_seconds,
    )
    logger.info(
        "pipeline.built",
        advisors=[advisor.name for advisor in advisors],
        tools=[tool.name for tool in tool_registry.specs()],
        window_size=config.memory.window_size,
    )
    return PipelineComponents(
        executor=executor,
        responder=responder,
        memory_store=memory_store,
        tool_registry=tool_registry,
        advisor_registry=advisor_registry,
        sink=sink,
        ticket_repository=ticket_repository,
    )
