"""Answer evaluators producing acceptance verdicts."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Protocol

from advisor_pipeline.config import ChatOptions
from advisor_pipeline.model.base import ChatModel
from advisor_pipeline.obs.tracing import tokenize
from advisor_pipeline.types import EvaluationVerdict, Message


@dataclass(frozen=True, slots=True)
class EvaluationRequest:
    user_text: str
    response_text: str
    documents: list[str] = field(default_factory=list)


class Evaluator(Protocol):
    async def evaluate(self, request: EvaluationRequest) -> EvaluationVerdict:
        """Judge whether the response is acceptable."""


_FACT_CHECK_PROMPT = """Decide whether the claim below is supported by the document.
Reply with exactly one word: "yes" if the document supports the claim, "no" otherwise.

Document: {document}
Claim: {claim}"""

_RELEVANCY_PROMPT = """Decide whether the response answers the query and agrees with the context.
Reply with exactly one word: "YES" or "NO".

Query: {query}
Response: {response}
Context: {context}
Answer:"""


class FactCheckingEvaluator:
    """Asks a judge model whether the answer is supported by the documents.

    Without documents the judge checks the claim against the question alone,
    which amounts to a general fact check.
    """

    def __init__(self, model: ChatModel, options: ChatOptions | None = None) -> None:
        self.model = model
        self.options = options or ChatOptions(temperature=0.0)

    async def evaluate(self, request: EvaluationRequest) -> EvaluationVerdict:
        document = "\n".join(request.documents) or request.user_text
        prompt = _FACT_CHECK_PROMPT.format(document=document, claim=request.response_text)
        result = await self.model.invoke([Message.user(prompt)], self.options)
        return _verdict_from_reply(result.content)


class RelevancyEvaluator:
    """Asks a judge model whether the answer is relevant to the query."""

    def __init__(self, model: ChatModel, options: ChatOptions | None = None) -> None:
        self.model = model
        self.options = options or ChatOptions(temperature=0.0)

    async def evaluate(self, request: EvaluationRequest) -> EvaluationVerdict:
        prompt = _RELEVANCY_PROMPT.format(
            query=request.user_text,
            response=request.response_text,
            context="\n".join(request.documents),
        )
        result = await self.model.invoke([Message.user(prompt)], self.options)
        return _verdict_from_reply(result.content)


class GroundednessEvaluator:
    """Computes attribution correctness from answer-source overlap.

    Metric definition used here:
    - Split answer into sentences.
    - Remove citation tags like `[doc-1-chunk-0001]`.
    - A sentence is considered grounded if at least one source snippet has token
      overlap ratio >= `min_overlap`.

    The verdict passes when the grounded share reaches `target`. This is a
    pragmatic, deterministic proxy that needs no judge model.
    """

    def __init__(self, min_overlap: float = 0.35, target: float = 0.95) -> None:
        self.min_overlap = min_overlap
        self.target = target

    async def evaluate(self, request: EvaluationRequest) -> EvaluationVerdict:
        score = self.score(request.response_text, request.documents)
        return EvaluationVerdict(
            passed=score >= self.target,
            score=score,
            rationale=f"{score:.0%} of sentences grounded in the supplied documents",
        )

    def score(self, answer: str, source_snippets: list[str]) -> float:
        sentences = [
            sentence.strip()
            for sentence in re.split(r"(?<=[.!?。！？])\s+", answer)
            if sentence.strip()
        ]
        if not sentences:
            return 1.0
        if not source_snippets:
            return 0.0

        source_token_sets = [set(tokenize(source)) for source in source_snippets]
        grounded = 0

        for sentence in sentences:
            clean_sentence = re.sub(r"\[[^\]]+\]", "", sentence).strip()
            sentence_tokens = set(tokenize(clean_sentence))
            if not sentence_tokens:
                grounded += 1
                continue

            if any(
                self._overlap(sentence_tokens, source_tokens) >= self.min_overlap
                for source_tokens in source_token_sets
            ):
                grounded += 1

        return grounded / len(sentences)

    @staticmethod
    def _overlap(a: set[str], b: set[str]) -> float:
        if not a or not b:
            return 0.0
        return len(a & b) / len(a)


def _verdict_from_reply(reply: str) -> EvaluationVerdict:
    words = reply.strip().lower().split()
    first = words[0].strip(".,!\"'") if words else ""
    passed = first == "yes"
    return EvaluationVerdict(passed=passed, score=1.0 if passed else 0.0, rationale=reply.strip())
