from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

from ragcore.context.assembler import AssembledContext, ContextAssembler, rank_web
from ragcore.context.compressor import ContextCompressor
from ragcore.conversation.manager import ConversationConfig, ConversationManager
from ragcore.core.cache import TTLCache, normalize_text
from ragcore.core.cancellation import CancellationToken
from ragcore.core.config import Settings, get_settings
from ragcore.core.errors import EmptyResultSet, InsufficientInformationError, PipelineCancelled, RAGError
from ragcore.core.resilience import NO_RETRY, ExternalCall, RetryPolicy
from ragcore.core.tokens import TokenCounter
from ragcore.core.types import (
    ConversationSummary,
    ConversationTurn,
    MessageSet,
    Query,
    RankedItem,
    TimeFilter,
    TopicScope,
    ValidationResult,
)
from ragcore.generation.answerer import Answerer, AnswerResult
from ragcore.generation.citation_validator import CitationValidator
from ragcore.generation.few_shot import FewShotSelector
from ragcore.generation.prompting import PromptBuilder, base_system_prompt
from ragcore.providers.cohere_reranker import CohereReranker
from ragcore.providers.openai_client import OpenAIEmbedder, OpenAILLM
from ragcore.providers.pgvector_store import PGConversationStore, PGVectorStore
from ragcore.providers.protocols import IndexFilter
from ragcore.providers.tavily_search import TavilySearch
from ragcore.query.processor import ProcessedQuery, QueryProcessor
from ragcore.rerank.reranker import RerankStage
from ragcore.retrieval.fusion import FusionWeights
from ragcore.retrieval.hybrid import HybridRetriever
from ragcore.retrieval.keyword import KeywordRetriever, user_tag
from ragcore.retrieval.semantic import DocumentRetriever
from ragcore.web.retriever import WebRetriever

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetrieveOptions:
    use_documents: bool = True
    use_web: bool = True
    rerank: bool = True
    compress: bool = True
    history: Tuple[ConversationTurn, ...] = ()
    conversation_id: Optional[str] = None
    weights: Optional[FusionWeights] = None


@dataclass(frozen=True)
class Candidates:
    """Ranked retrieval output before budgeting; what the context cache holds."""

    processed: ProcessedQuery
    documents: Tuple[RankedItem, ...]
    web: Tuple[RankedItem, ...]
    warnings: Tuple[str, ...] = ()
    reranked: bool = False


@dataclass(frozen=True)
class RetrievalRun:
    processed: ProcessedQuery
    context: AssembledContext
    summary: ConversationSummary
    timings: Dict[str, float] = field(default_factory=dict)


def _cache_key(query: Query, options: RetrieveOptions) -> tuple:
    tf = query.time_filter or TimeFilter()
    topic = query.topic
    return (
        "context",
        query.user_id,
        normalize_text(query.text),
        (topic.name, topic.description, topic.topic_id, topic.strict) if topic else None,
        (tf.time_range, tf.start, tf.end, tf.country),
        options.use_documents,
        options.use_web,
        options.rerank,
        options.weights,
    )


class RAGPipeline:
    def __init__(
        self,
        processor: QueryProcessor,
        assembler: ContextAssembler,
        builder: PromptBuilder,
        hybrid: Optional[HybridRetriever] = None,
        web: Optional[WebRetriever] = None,
        reranker: Optional[RerankStage] = None,
        compressor: Optional[ContextCompressor] = None,
        conversation: Optional[ConversationManager] = None,
        answerer: Optional[Answerer] = None,
        validator: Optional[CitationValidator] = None,
        context_cache: Optional[TTLCache] = None,
        deadline_s: Optional[float] = 30.0,
    ):
        self.processor = processor
        self.assembler = assembler
        self.builder = builder
        self.hybrid = hybrid
        self.web = web
        self.reranker = reranker
        self.compressor = compressor
        self.conversation = conversation
        self.answerer = answerer
        self.validator = validator or CitationValidator()
        self.context_cache = context_cache
        self.deadline_s = deadline_s

    def new_token(self) -> CancellationToken:
        return CancellationToken(self.deadline_s)

    # Retrieval

    async def retrieve_context(
        self,
        query: Query,
        options: RetrieveOptions = RetrieveOptions(),
        token: Optional[CancellationToken] = None,
    ) -> AssembledContext:
        run = await self.run(query, options, token)
        return run.context

    async def run(
        self,
        query: Query,
        options: RetrieveOptions = RetrieveOptions(),
        token: Optional[CancellationToken] = None,
    ) -> RetrievalRun:
        token = token or self.new_token()
        t0 = time.perf_counter()

        candidates, summary = await asyncio.gather(
            self._cached_candidates(query, options, token),
            self._history(query, options, token),
        )
        t_retrieve = time.perf_counter()

        budget = self.assembler.budget()
        documents: List[RankedItem] = list(candidates.documents)
        web: List[RankedItem] = list(candidates.web)
        if self.compressor is not None and options.compress:
            documents, web = await asyncio.gather(
                self.compressor.compress(query.text, documents, budget.documents, token),
                self.compressor.compress(query.text, web, budget.web, token),
            )

        system_prompt = base_system_prompt(query.topic)
        context = self.assembler.assemble(
            documents,
            web,
            system_prompt=system_prompt,
            user_prompt=query.text,
            history=summary.as_turns(),
            budget=budget,
        )
        if candidates.warnings:
            context = replace(context, warnings=candidates.warnings + context.warnings)
        t_done = time.perf_counter()

        timings = {
            "retrieve_ms": (t_retrieve - t0) * 1000.0,
            "assemble_ms": (t_done - t_retrieve) * 1000.0,
        }
        logger.info(
            "context: %d documents, %d web, %d/%d tokens, retrieve %.0fms, assemble %.0fms",
            len(context.documents),
            len(context.web_results),
            context.context_tokens,
            budget.available,
            timings["retrieve_ms"],
            timings["assemble_ms"],
        )
        return RetrievalRun(candidates.processed, context, summary, timings)

    async def _cached_candidates(
        self, query: Query, options: RetrieveOptions, token: CancellationToken
    ) -> Candidates:
        if self.context_cache is None:
            return await self._candidates(query, options, token)
        # the shared load runs on its own deadline; this request waits on `token`
        return await self.context_cache.get_or_load(
            _cache_key(query, options),
            lambda: self._candidates(query, options, self.new_token()),
            tags=[user_tag(query.user_id)],
            token=token,
        )

    async def _candidates(self, query: Query, options: RetrieveOptions, token: CancellationToken) -> Candidates:
        processed = await self.processor.process(query, token)
        filter = IndexFilter(user_id=query.user_id, topic_id=query.topic.topic_id if query.topic else None)

        branches = {}
        if self.hybrid is not None and options.use_documents:
            branches["documents"] = self.hybrid.retrieve(processed, filter, token, options.weights)
        if self.web is not None and options.use_web:
            branches["web"] = self.web.retrieve(processed.text, query.time_filter, token)
        results = dict(zip(branches, await asyncio.gather(*branches.values(), return_exceptions=True)))

        failures: Dict[str, str] = {}
        warnings: List[str] = []
        for name, r in results.items():
            if isinstance(r, PipelineCancelled):
                raise r
            if isinstance(r, RAGError):
                failures[name] = str(r)
                logger.warning("%s retrieval degraded to empty: %s", name, r)
            elif isinstance(r, BaseException):
                raise r

        documents: List[RankedItem] = []
        hybrid_result = results.get("documents")
        if hybrid_result is not None and not isinstance(hybrid_result, BaseException):
            documents = hybrid_result.items
            for branch, err in hybrid_result.failures.items():
                warnings.append(f"{branch} retrieval failed: {err}")
            if hybrid_result.failed:
                failures["documents"] = "; ".join(hybrid_result.failures.values())

        web_items = results.get("web")
        web: List[RankedItem] = []
        if web_items is not None and not isinstance(web_items, BaseException):
            web = rank_web(web_items)

        warnings += [f"{name} retrieval failed: {err}" for name, err in failures.items()]

        if not documents and not web:
            causes = {name: failures.get(name) or str(EmptyResultSet(name)) for name in results}
            logger.error("all retrieval branches failed or came back empty: %s", causes)
            raise InsufficientInformationError(causes)

        reranked = False
        if documents and self.reranker is not None and options.rerank:
            outcome = await self.reranker.rerank(query.text, documents, token)
            documents = outcome.items
            reranked = outcome.applied
            if outcome.error:
                warnings.append(f"rerank skipped: {outcome.error}")

        return Candidates(
            processed=processed,
            documents=tuple(documents),
            web=tuple(web),
            warnings=tuple(dict.fromkeys(warnings)),
            reranked=reranked,
        )

    async def _history(self, query: Query, options: RetrieveOptions, token: CancellationToken) -> ConversationSummary:
        turns: Sequence[ConversationTurn] = options.history
        if self.conversation is None:
            return ConversationSummary(summary_text="", preserved_recent_turns=tuple(turns))
        if not turns and options.conversation_id:
            try:
                turns = await self.conversation.load(options.conversation_id, token)
            except PipelineCancelled:
                raise
            except RAGError as exc:
                logger.warning("could not load conversation %s: %s", options.conversation_id, exc)
                turns = ()
        return await self.conversation.prepare(turns, query.text, token)

    # Generation

    def build_prompt(
        self,
        context: AssembledContext,
        question: str,
        summary: Optional[ConversationSummary] = None,
        topic: Optional[TopicScope] = None,
    ) -> MessageSet:
        return self.builder.build(context, question, summary=summary, topic=topic)

    def validate_citations(self, answer_text: str, context: AssembledContext) -> ValidationResult:
        return self.validator.validate(answer_text, context.items)

    async def answer(
        self,
        query: Query,
        options: RetrieveOptions = RetrieveOptions(),
        token: Optional[CancellationToken] = None,
    ) -> AnswerResult:
        if self.answerer is None:
            raise ValueError("no answerer configured")
        token = token or self.new_token()
        run = await self.run(query, options, token)
        # history already fitted into the context budget
        messages = self.builder.build(
            run.context, query.text, topic=query.topic, query_type=run.processed.query_type
        )
        result = await self.answerer.answer(messages, run.context, token)
        if run.context.warnings:
            result = replace(result, warnings=run.context.warnings + result.warnings)
        return result

    # Cache lifecycle

    def invalidate_user_documents(self, user_id: str) -> int:
        """Drop cached retrieval output and BM25 indexes for ``user_id``."""
        if self.context_cache is None:
            return 0
        return self.context_cache.invalidate_tag(user_tag(user_id))

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RAGPipeline":
        s = settings or get_settings()
        breaker = s.breaker_policy()

        def call(name: str, timeout: Optional[float] = s.external_timeout_s, retry: Optional[RetryPolicy] = None):
            return ExternalCall.from_policies(name, timeout, retry or s.retry_policy(), breaker)

        counter = TokenCounter(s.llm_model)
        query_cache = TTLCache("query", s.query_cache_ttl_s)
        embedding_cache = TTLCache("embedding", s.embedding_cache_ttl_s)
        context_cache = TTLCache("context", s.context_cache_ttl_s)

        api_key = s.require("openai_api_key")
        llm = OpenAILLM(api_key, s.llm_model)
        store = PGVectorStore(s.require("pg_dsn"))

        semantic = DocumentRetriever(
            OpenAIEmbedder(api_key, s.embedding_model),
            store,
            top_k=s.semantic_top_k,
            embed_call=call("embedding"),
            index_call=call("vector-index"),
            embedding_cache=embedding_cache,
        )
        keyword = KeywordRetriever(
            store, top_k=s.bm25_top_k, store_call=call("document-store"), index_cache=context_cache
        )

        web = None
        if s.tavily_api_key:
            web = WebRetriever(
                TavilySearch(s.tavily_api_key, timeout=s.external_timeout_s),
                max_results=s.web_max_results,
                call=call("web-search"),
            )
        else:
            logger.info("TAVILY_API_KEY not set, web retrieval disabled")

        reranker = None
        if (s.rerank_provider or "").lower() == "cohere":
            reranker = RerankStage(
                CohereReranker(s.require("cohere_api_key"), s.cohere_rerank_model),
                top_k=s.rerank_top_k,
                top_m=s.final_top_k,
                call=call("rerank", s.rerank_timeout_s, NO_RETRY),
                timeout=s.rerank_timeout_s,
            )

        conversation = ConversationManager(
            llm,
            ConversationConfig(
                window=s.history_window,
                summary_threshold=s.history_summary_threshold,
                timeout=s.summary_timeout_s,
            ),
            model=s.llm_model,
            call=call("summarizer", s.summary_timeout_s, NO_RETRY),
            store=PGConversationStore(store.engine),
            store_call=call("conversation-store"),
        )

        return cls(
            processor=QueryProcessor(
                llm,
                call=call("query-rewrite"),
                cache=query_cache,
                model=s.llm_model,
                max_variants=s.max_query_variants,
            ),
            assembler=ContextAssembler(counter, s.budget_allocation(), document_priority=s.document_priority),
            builder=PromptBuilder(counter, FewShotSelector(counter)),
            hybrid=HybridRetriever(semantic, keyword, s.fusion_config()),
            web=web,
            reranker=reranker,
            compressor=ContextCompressor(
                llm,
                counter,
                s.llm_model,
                call=call("compression", s.compression_timeout_s, NO_RETRY),
                timeout=s.compression_timeout_s,
            ),
            conversation=conversation,
            answerer=Answerer(
                llm,
                s.llm_model,
                call=call("llm", s.llm_timeout_s),
                max_tokens=s.max_response_tokens,
            ),
            context_cache=context_cache,
            deadline_s=s.request_deadline_s,
        )
