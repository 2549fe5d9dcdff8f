from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ragcore.context.assembler import AssembledContext
from ragcore.core.cancellation import CancellationToken
from ragcore.core.errors import PipelineCancelled, RAGError
from ragcore.core.resilience import ExternalCall
from ragcore.core.types import Message, MessageSet, ValidationResult
from ragcore.generation.citation_validator import CitationValidator, source_label
from ragcore.providers.protocols import CompletionOptions, LLMProvider

logger = logging.getLogger(__name__)

REPAIR_INSTRUCTIONS = """Your previous answer used citations that do not match the CONTEXT.
Rewrite the answer with the same content, citing ONLY these sources:
{allowed}
Drop any claim you cannot support with one of them."""


@dataclass(frozen=True)
class AnswerResult:
    answer: str
    validation: ValidationResult
    context: AssembledContext
    messages: MessageSet
    repaired: bool = False
    warnings: Tuple[str, ...] = ()


def allowed_citations(context: AssembledContext) -> str:
    labels = [source_label(r, i) for i, r in enumerate(context.documents, start=1)]
    labels += [f"{source_label(r, i)}({r.source_ref.url})" for i, r in enumerate(context.web_results, start=1)]
    return ", ".join(labels)


class Answerer:
    """
    Calls the LLM with a built message set and validates the citations of
    the complete answer. Streamed output is buffered first; validation only
    ever sees a finished answer.
    """

    def __init__(
        self,
        llm: LLMProvider,
        model: str = "gpt-4o-mini",
        call: Optional[ExternalCall] = None,
        validator: Optional[CitationValidator] = None,
        max_tokens: Optional[int] = None,
        stream: bool = False,
        repair: bool = True,
    ):
        self.llm = llm
        self.model = model
        self.call = call or ExternalCall("llm", timeout=60.0)
        self.validator = validator or CitationValidator()
        self.max_tokens = max_tokens
        self.stream = stream
        self.repair = repair

    async def generate(self, messages: MessageSet, token: CancellationToken, max_tokens: Optional[int] = None) -> str:
        options = CompletionOptions(
            model=self.model,
            max_tokens=max_tokens or self.max_tokens,
            temperature=0.0,
            stream=self.stream,
        )

        async def run() -> str:
            out = await self.llm.complete(messages.to_openai(), options)
            if isinstance(out, str):
                return out
            parts: List[str] = []
            async for piece in out:
                token.raise_if_cancelled()
                parts.append(piece)
            return "".join(parts)

        text = await self.call(run, token=token)
        return (text or "").strip()

    async def answer(
        self,
        messages: MessageSet,
        context: AssembledContext,
        token: Optional[CancellationToken] = None,
    ) -> AnswerResult:
        token = token or CancellationToken.none()
        max_tokens = self.max_tokens or context.budget.response_reserve or None

        # Pass 1
        text = await self.generate(messages, token, max_tokens)
        validation = self.validator.validate(text, context.items)
        if validation.is_valid or not self.repair or context.is_empty():
            return AnswerResult(text, validation, context, messages)

        # Pass 2 (repair): only when pass 1 cited sources that were never sent
        repair_messages = MessageSet(
            messages=messages.messages
            + (
                Message("assistant", text),
                Message("user", REPAIR_INSTRUCTIONS.format(allowed=allowed_citations(context))),
            )
        )
        try:
            repaired = await self.generate(repair_messages, token, max_tokens)
        except PipelineCancelled:
            raise
        except RAGError as exc:
            logger.warning("citation repair failed, keeping first answer: %s", exc)
            return AnswerResult(text, validation, context, messages, warnings=(f"citation repair failed: {exc}",))

        second = self.validator.validate(repaired, context.items)
        if second.is_valid:
            return AnswerResult(repaired, second, context, repair_messages, repaired=True)
        logger.info("citation repair did not resolve %d citations, keeping first answer", validation.unmatched_count)
        return AnswerResult(text, validation, context, messages)
