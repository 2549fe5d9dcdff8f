from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from ragcore.core.errors import ProviderError
from ragcore.core.types import ConversationTurn, DocumentRef, RetrievedItem, SourceType
from ragcore.providers.protocols import CorpusChunk, IndexFilter


class PGVectorStore:
    """
    Read-only view over the pgvector tables owned by the ingestion service:

      documents(doc_id PK, user_id, topic_id, title, source)
      chunks(chunk_id PK, doc_id, chunk_index, text, metadata jsonb)
      embeddings(chunk_id PK, embedding vector)

    SQLAlchemy calls are blocking, so the async methods run them in a worker
    thread.
    """

    name = "pgvector"

    def __init__(self, dsn: Optional[str] = None, engine: Optional[Engine] = None):
        if engine is None:
            if not dsn:
                raise ValueError("PG_DSN is not configured")
            engine = create_engine(dsn, pool_pre_ping=True, future=True)
        self.engine: Engine = engine

    async def query(self, vector: Sequence[float], filter: IndexFilter, top_k: int) -> List[RetrievedItem]:
        return await asyncio.to_thread(self._semantic_search, list(vector), filter, top_k)

    async def list_chunks(self, filter: IndexFilter) -> List[CorpusChunk]:
        return await asyncio.to_thread(self._list_chunks, filter)

    def _semantic_search(self, vector: List[float], filter: IndexFilter, top_k: int) -> List[RetrievedItem]:
        """
        Returns items scored by cosine similarity (1 - cosine distance),
        best first.
        """
        where, params = _scope(filter)
        params["k"] = top_k
        # Use a casted parameter for the query vector to avoid inlining large literals.
        params["q"] = _to_pgvector_literal(vector)

        sql = text(f"""
        SELECT c.chunk_id, c.doc_id, c.chunk_index, c.text, c.metadata, d.title,
               (e.embedding <=> CAST(:q AS vector)) AS distance
        FROM embeddings e
        JOIN chunks c ON c.chunk_id = e.chunk_id
        JOIN documents d ON d.doc_id = c.doc_id
        {where}
        ORDER BY e.embedding <=> CAST(:q AS vector)
        LIMIT :k;
        """)

        rows = self._fetch(sql, params)
        out: List[RetrievedItem] = []
        for r in rows:
            out.append(
                RetrievedItem(
                    id=r["chunk_id"],
                    content=r["text"],
                    raw_score=1.0 - float(r["distance"]),
                    source_type=SourceType.DOCUMENT,
                    source_ref=DocumentRef(r["doc_id"], int(r["chunk_index"]), r["title"]),
                    retriever="semantic",
                    metadata=_metadata(r["metadata"]),
                )
            )
        return out

    def _list_chunks(self, filter: IndexFilter) -> List[CorpusChunk]:
        where, params = _scope(filter)
        sql = text(f"""
        SELECT c.chunk_id, c.doc_id, c.chunk_index, c.text, c.metadata, d.title
        FROM chunks c
        JOIN documents d ON d.doc_id = c.doc_id
        {where}
        ORDER BY c.doc_id, c.chunk_index;
        """)
        return [
            CorpusChunk(
                chunk_id=r["chunk_id"],
                document_id=r["doc_id"],
                chunk_index=int(r["chunk_index"]),
                text=r["text"],
                title=r["title"],
                metadata=_metadata(r["metadata"]),
            )
            for r in self._fetch(sql, params)
        ]

    def _fetch(self, sql, params: Dict[str, Any]):
        try:
            with self.engine.connect() as conn:
                return conn.execute(sql, params).mappings().all()
        except OperationalError as exc:
            raise ProviderError(self.name, str(exc.orig), retryable=True) from exc
        except SQLAlchemyError as exc:
            raise ProviderError(self.name, str(exc), retryable=False) from exc


class PGConversationStore:
    """Reads chat history from messages(conversation_id, role, content, created_at)."""

    name = "pg-conversations"

    def __init__(self, engine: Engine):
        self.engine = engine

    async def load_turns(self, conversation_id: str, limit: Optional[int] = None) -> List[ConversationTurn]:
        return await asyncio.to_thread(self._load_turns, conversation_id, limit)

    def _load_turns(self, conversation_id: str, limit: Optional[int]) -> List[ConversationTurn]:
        params: Dict[str, Any] = {"cid": conversation_id}
        limit_clause = ""
        if limit is not None:
            limit_clause = "LIMIT :limit"
            params["limit"] = limit
        # newest N, returned oldest first
        sql = text(f"""
        SELECT role, content FROM (
          SELECT role, content, created_at
          FROM messages
          WHERE conversation_id = :cid
          ORDER BY created_at DESC
          {limit_clause}
        ) t
        ORDER BY created_at ASC;
        """)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(sql, params).mappings().all()
        except SQLAlchemyError as exc:
            raise ProviderError(self.name, str(exc), retryable=isinstance(exc, OperationalError)) from exc
        return [ConversationTurn(role=r["role"], content=r["content"]) for r in rows]


def _scope(filter: IndexFilter):
    clauses = ["d.user_id = :user_id"]
    params: Dict[str, Any] = {"user_id": filter.user_id}
    if filter.topic_id:
        clauses.append("d.topic_id = :topic_id")
        params["topic_id"] = filter.topic_id
    return "WHERE " + " AND ".join(clauses), params


def _to_pgvector_literal(vec: List[float]) -> str:
    # pgvector accepts array-like string: '[1,2,3]'
    return "[" + ",".join(f"{x:.8f}" for x in vec) + "]"


def _metadata(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, str):
        return json.loads(raw)
    return raw or {}
