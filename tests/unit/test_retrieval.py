import asyncio

import pytest
from conftest import ScriptedChatModel, answer
from langchain_core.documents import Document

from advisor_pipeline.advisors.memory import MemoryAdvisor
from advisor_pipeline.advisors.retrieval import RetrievalAdvisor
from advisor_pipeline.config import RetrievalConfig
from advisor_pipeline.errors import RetrievalError, StageTimeoutError
from advisor_pipeline.executor import AdvisorChainExecutor
from advisor_pipeline.retrieval.augmentor import (
    CONTEXT_DELIMITER,
    RetrievalAugmentor,
    render_context,
)
from advisor_pipeline.retrieval.vector_index import InMemoryVectorIndex, LangChainVectorIndex
from advisor_pipeline.types import PipelineRequest, RetrievedDocument, Role


class _UnrulyIndex:
    """Ignores top_k and the threshold, and returns hits unsorted."""

    async def search(self, query_text, top_k, similarity_threshold):
        return [
            RetrievedDocument(text="b", score=0.55, source_id="b"),
            RetrievedDocument(text="low", score=0.2, source_id="low"),
            RetrievedDocument(text="a", score=0.91, source_id="a"),
            RetrievedDocument(text="c", score=0.77, source_id="c"),
            RetrievedDocument(text="d", score=0.5, source_id="d"),
        ]


class _DownIndex:
    async def search(self, query_text, top_k, similarity_threshold):
        raise ConnectionError("vector db unreachable")


class _SlowIndex:
    async def search(self, query_text, top_k, similarity_threshold):
        await asyncio.sleep(1)
        return []


async def test_augmentor_enforces_top_k_threshold_and_order() -> None:
    augmentor = RetrievalAugmentor(
        _UnrulyIndex(), RetrievalConfig(top_k=3, similarity_threshold=0.5)
    )

    documents = await augmentor.retrieve("anything")

    assert [doc.source_id for doc in documents] == ["a", "c", "b"]
    assert all(doc.score >= 0.5 for doc in documents)


async def test_fewer_hits_than_top_k_is_not_an_error() -> None:
    augmentor = RetrievalAugmentor(
        _UnrulyIndex(), RetrievalConfig(top_k=10, similarity_threshold=0.9)
    )

    documents = await augmentor.retrieve("anything")

    assert [doc.source_id for doc in documents] == ["a"]


async def test_index_failure_and_timeout_are_distinguished() -> None:
    with pytest.raises(RetrievalError):
        await RetrievalAugmentor(_DownIndex()).retrieve("q")

    with pytest.raises(StageTimeoutError) as exc_info:
        await RetrievalAugmentor(_SlowIndex(), timeout_seconds=0.01).retrieve("q")
    assert exc_info.value.stage == "retrieval"


async def test_in_memory_index_ranks_matching_document_first() -> None:
    index = InMemoryVectorIndex()
    index.add(
        [
            "Company policy states all employees must encrypt customer data at rest.",
            "Holiday arrangements are documented in the employee handbook.",
        ],
        source_ids=["policy", "faq"],
    )

    documents = await index.search(
        "encrypt customer data at rest", top_k=2, similarity_threshold=0.1
    )

    assert documents[0].source_id == "policy"
    assert all(0.0 <= doc.score <= 1.0 for doc in documents)


class _FakeLangChainStore:
    async def asimilarity_search_with_score(self, query, k=4):
        return [
            (Document(page_content="VPN setup guide", metadata={"source": "kb-12"}), 0.83),
            (Document(page_content="Printer FAQ", metadata={"source": "kb-3"}), 0.31),
        ][:k]


async def test_langchain_index_maps_documents_and_filters_scores() -> None:
    index = LangChainVectorIndex(_FakeLangChainStore())

    documents = await index.search("vpn", top_k=3, similarity_threshold=0.5)

    assert documents == [RetrievedDocument(text="VPN setup guide", score=0.83, source_id="kb-12")]


def test_render_context_joins_documents_inside_delimiters() -> None:
    context = render_context(
        [
            RetrievedDocument(text="first fact", score=0.9, source_id="1"),
            RetrievedDocument(text="second fact", score=0.8, source_id="2"),
        ]
    )

    assert f"{CONTEXT_DELIMITER}\nfirst fact\nsecond fact\n{CONTEXT_DELIMITER}" in context


async def test_retrieved_context_reaches_system_slot_but_not_memory(memory_store) -> None:
    index = InMemoryVectorIndex()
    index.add(["The VPN gateway is vpn.example.com."], source_ids=["kb-vpn"])
    model = ScriptedChatModel(answer("Use vpn.example.com."))
    executor = AdvisorChainExecutor(
        model,
        [
            MemoryAdvisor(memory_store),
            RetrievalAdvisor(RetrievalAugmentor(index, RetrievalConfig(similarity_threshold=0.3))),
        ],
        memory_store=memory_store,
        system_prompt="You are a help desk assistant.",
    )

    response = await executor.call(
        PipelineRequest(conversation_id="alice", user_message="What is the VPN gateway?")
    )

    system = model.calls[0][0]
    assert system.role is Role.SYSTEM
    assert system.content.startswith("You are a help desk assistant.")
    assert "vpn.example.com" in system.content
    assert [doc.source_id for doc in response.documents] == ["kb-vpn"]
    history = await memory_store.load("alice")
    assert [m.content for m in history] == ["What is the VPN gateway?", "Use vpn.example.com."]


async def test_retrieval_failure_degrades_or_aborts_per_config(memory_store) -> None:
    model = ScriptedChatModel(answer("answer without context"))
    request = PipelineRequest(conversation_id="c1", user_message="hi")

    degrading = AdvisorChainExecutor(
        model,
        [RetrievalAdvisor(RetrievalAugmentor(_DownIndex(), RetrievalConfig(on_failure="proceed")))],
        memory_store=memory_store,
    )
    response = await degrading.call(request)
    assert response.content == "answer without context"
    assert response.documents == []

    aborting = AdvisorChainExecutor(
        model,
        [RetrievalAdvisor(RetrievalAugmentor(_DownIndex(), RetrievalConfig(on_failure="abort")))],
        memory_store=memory_store,
    )
    with pytest.raises(RetrievalError):
        await aborting.call(PipelineRequest(conversation_id="c2", user_message="hi"))
    assert await memory_store.load("c2") == []
    assert model.rounds == 1
