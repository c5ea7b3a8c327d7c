import logging
from typing import Dict, List, Optional, Sequence

from support_agent.schemas.chat import MessageRead
from support_agent.schemas.faq import FAQRead
from support_agent.utils.tokenizer_service import TokenizerService

logger = logging.getLogger(__name__)

__all__ = ["PromptBuilder", "PromptMessage", "SYSTEM_PROMPT_TEMPLATE", "NO_FAQ_PLACEHOLDER"]

PromptMessage = Dict[str, str]

NO_FAQ_PLACEHOLDER = "No specific FAQ information available for this query."

SYSTEM_PROMPT_TEMPLATE = """You are a helpful and friendly customer support agent for our company. Your goal is to assist users with their questions quickly and accurately.

ROLE & CAPABILITIES:
- Answer questions about billing, account management, and technical support
- Provide clear, concise responses (under 200 words)
- Use information from the FAQ knowledge base below when available
- Admit when you don't know something rather than guessing
- Maintain a professional yet warm tone

RESPONSE GUIDELINES:
- Be direct: Answer the question in the first sentence
- Be specific: Include concrete steps, links, or examples
- Be concise: Keep responses under 200 words unless more detail is requested
- Be empathetic: Acknowledge user frustration when appropriate
- Use bullet points for multi-step instructions

CONSTRAINTS:
- ONLY answer questions related to our product/service
- DO NOT provide medical, legal, or financial advice
- DO NOT make promises about features or timelines
- DO NOT ask for sensitive information (passwords, credit card numbers)
- If a question is outside your scope, politely redirect to human support

AVAILABLE KNOWLEDGE BASE:
{faq_knowledge_base}

When answering:
1. Check if the FAQ knowledge base contains relevant information
2. Use that information as the primary source for your answer
3. If the answer isn't in the knowledge base, use general reasoning
4. If you're uncertain, say "I'm not sure" and suggest contacting support"""

# Segments kept by the aggressive fallback, in addition to the system segment
FALLBACK_RECENT_SEGMENTS = 5
# Minimum number of history messages kept even when they exceed the history budget
MIN_HISTORY_MESSAGES = 2


class PromptBuilder:
    """
    Assembles the chat-completion message list for a turn:
    system segment (template + FAQs), token-budgeted history, user message.
    """

    def __init__(
        self,
        max_faqs: int = 5,
        max_history_tokens: int = 1200,
        max_total_tokens: int = 4000,
        tokenizer: Optional[TokenizerService] = None,
    ):
        self.max_faqs = max_faqs
        self.max_history_tokens = max_history_tokens
        self.max_total_tokens = max_total_tokens
        self.tokenizer = tokenizer or TokenizerService()

    def build(
        self,
        user_message: str,
        faqs: Sequence[FAQRead],
        conversation_history: Sequence[MessageRead],
    ) -> List[PromptMessage]:
        """
        Builds the ordered prompt. The first segment is always the system
        prompt and the last is always the user message, verbatim.
        """
        system_prompt = self.render_system_prompt(faqs)

        history_messages = self.format_history(conversation_history)
        truncated_history = self.truncate_history(history_messages, self.max_history_tokens)

        messages: List[PromptMessage] = [
            {"role": "system", "content": system_prompt},
            *truncated_history,
            {"role": "user", "content": user_message},
        ]

        total_tokens = self.tokenizer.count_message_tokens(messages)
        if total_tokens > self.max_total_tokens:
            logger.warning(
                f"Token limit exceeded ({total_tokens} > {self.max_total_tokens}), applying aggressive trimming"
            )
            return self.aggressive_trim(messages)

        logger.debug(
            f"Prompt built: system_tokens={self.tokenizer.count_tokens(system_prompt)} "
            f"history_messages={len(truncated_history)} faq_count={len(faqs)} total_tokens={total_tokens}"
        )
        return messages

    def build_simple_prompt(self, user_message: str) -> List[PromptMessage]:
        """System prompt without FAQ context followed by the user message."""
        return [
            {"role": "system", "content": self.render_system_prompt([])},
            {"role": "user", "content": user_message},
        ]

    def estimate_prompt_tokens(
        self,
        user_message: str,
        faqs: Sequence[FAQRead],
        conversation_history: Sequence[MessageRead],
    ) -> int:
        return self.tokenizer.count_message_tokens(self.build(user_message, faqs, conversation_history))

    # --- Steps ---

    def render_system_prompt(self, faqs: Sequence[FAQRead]) -> str:
        return SYSTEM_PROMPT_TEMPLATE.replace("{faq_knowledge_base}", self.format_faqs(faqs))

    def format_faqs(self, faqs: Sequence[FAQRead]) -> str:
        if not faqs:
            return NO_FAQ_PLACEHOLDER

        return "\n\n".join(
            f"Q{index}: [{faq.category or 'general'}] {faq.question}\nA{index}: {faq.answer}"
            for index, faq in enumerate(faqs[: self.max_faqs], start=1)
        )

    @staticmethod
    def format_history(messages: Sequence[MessageRead]) -> List[PromptMessage]:
        return [{"role": msg.role, "content": msg.content} for msg in messages if msg.role != "system"]

    def truncate_history(self, messages: List[PromptMessage], max_tokens: int) -> List[PromptMessage]:
        """
        Keeps the most recent messages whose estimated tokens fit in `max_tokens`.
        The oldest messages are dropped first; the last two are always kept.
        """
        kept: List[PromptMessage] = []
        token_count = 0

        for msg in reversed(messages):
            msg_tokens = self.tokenizer.count_tokens(msg["content"])
            if token_count + msg_tokens > max_tokens:
                break
            kept.append(msg)
            token_count += msg_tokens

        if len(kept) < MIN_HISTORY_MESSAGES and len(messages) >= MIN_HISTORY_MESSAGES:
            return messages[-MIN_HISTORY_MESSAGES:]

        kept.reverse()
        return kept

    @staticmethod
    def aggressive_trim(messages: List[PromptMessage]) -> List[PromptMessage]:
        """Coarse fallback: the system segment plus the last five segments after it."""
        return [messages[0], *messages[1:][-FALLBACK_RECENT_SEGMENTS:]]
