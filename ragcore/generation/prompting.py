from __future__ import annotations

from typing import List, Optional

from ragcore.context.assembler import AssembledContext, fit_history
from ragcore.core.tokens import TokenCounter
from ragcore.core.types import ConversationSummary, Message, MessageSet, QueryType, TopicScope
from ragcore.generation.few_shot import FewShotSelector, format_examples
from ragcore.query.classifier import classify_query

INSUFFICIENT_CONTEXT_REPLY = "I don't know based on the provided sources."

SYSTEM_PROMPT = f"""You are a research assistant that answers questions using the sources in CONTEXT.

You MUST follow these rules:
1) Use the provided CONTEXT first. Be accurate, specific and concise.
2) When a user document and a web source disagree, prefer the document.
3) If the CONTEXT does not contain the answer, reply exactly:
   {INSUFFICIENT_CONTEXT_REPLY}
"""

CITATION_RULES = """Citation rules:
- Cite every factual claim inline, right after the sentence it supports.
- Cite documents as [Document N] using the number shown in CONTEXT.
- Cite web sources as [Web Source N](URL) with the exact URL shown in CONTEXT.
- Cite ONLY sources listed in CONTEXT. Never invent source numbers or URLs.
"""


def topic_instructions(topic: Optional[TopicScope]) -> str:
    if topic is None or not topic.name.strip():
        return ""
    about = f" {topic.description.strip()}" if topic.description.strip() else ""
    if topic.strict:
        return (
            f"Topic scope: {topic.name}.{about}\n"
            f"Answer only questions about {topic.name}. If the question is outside this topic, "
            f"say that it is outside the scope of {topic.name} and do not answer it.\n"
        )
    return (
        f"Topic focus: {topic.name}.{about}\n"
        f"Prioritize information related to {topic.name}. "
        "Questions outside this topic may be answered briefly.\n"
    )


def base_system_prompt(topic: Optional[TopicScope] = None) -> str:
    text = SYSTEM_PROMPT + "\n" + CITATION_RULES
    scope = topic_instructions(topic)
    if scope:
        text += "\n" + scope
    return text


def format_context(context: AssembledContext) -> str:
    """Numbered source blocks: documents first, then web, one counter per kind."""
    blocks: List[str] = []
    for i, r in enumerate(context.documents, start=1):
        blocks.append(f"[Document {i}] {r.title}\n{r.content}")
    for i, r in enumerate(context.web_results, start=1):
        blocks.append(f"[Web Source {i}]({r.source_ref.url}) {r.title}\n{r.content}")
    if not blocks:
        return "(no sources available)"
    return "\n\n".join(blocks)


def build_user_prompt(question: str, context: AssembledContext) -> str:
    return f"""CONTEXT:
{format_context(context)}

QUESTION:
{question}
"""


class PromptBuilder:
    def __init__(
        self,
        counter: TokenCounter,
        few_shot: Optional[FewShotSelector] = None,
        max_example_tokens: int = 500,
    ):
        self.counter = counter
        self.few_shot = few_shot
        self.max_example_tokens = max_example_tokens

    def system_prompt(
        self,
        question: str,
        context: AssembledContext,
        topic: Optional[TopicScope] = None,
        query_type: Optional[QueryType] = None,
    ) -> str:
        text = base_system_prompt(topic)
        if self.few_shot is None:
            return text

        # examples only get what is left of the system sub-budget
        cap = min(self.max_example_tokens, context.budget.system - self.counter.count(text))
        examples = self.few_shot.select(
            question,
            query_type or classify_query(question),
            has_documents=bool(context.documents),
            has_web_results=bool(context.web_results),
            max_tokens=cap,
        )
        if examples:
            text += "\n" + format_examples(examples) + "\n"
        return text

    def build(
        self,
        context: AssembledContext,
        question: str,
        summary: Optional[ConversationSummary] = None,
        topic: Optional[TopicScope] = None,
        query_type: Optional[QueryType] = None,
    ) -> MessageSet:
        system = self.system_prompt(question, context, topic, query_type)
        user = build_user_prompt(question, context)

        turns = summary.as_turns() if summary is not None else context.history
        history_cap = max(0, context.budget.user - self.counter.count(question))
        history, _ = fit_history(turns, history_cap, self.counter)

        messages = [Message("system", system)]
        messages += [Message(t.role, t.content) for t in history]
        messages.append(Message("user", user))
        return MessageSet(
            messages=tuple(messages),
            token_count=sum(self.counter.count(m.content) for m in messages),
        )
