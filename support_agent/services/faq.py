import logging
import re
import uuid
from typing import List, Optional

from sqlalchemy import desc, func, literal, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from support_agent.core.errors import NotFoundError, StorageError
from support_agent.models.faq import FAQ
from support_agent.schemas.faq import FAQCreateSchema, FAQRead, FAQUpdateSchema
from support_agent.services.cache import CacheService

logger = logging.getLogger(__name__)

__all__ = ["FAQService", "extract_keywords", "build_ts_query", "STOP_WORDS"]

STOP_WORDS = frozenset({
    "a", "an", "the", "is", "are", "was", "were", "i", "you", "he", "she",
    "it", "we", "they", "my", "your", "how", "what", "when", "where", "do",
    "can", "to", "in", "on", "at", "for", "with", "of",
})
MAX_KEYWORDS = 10
MIN_KEYWORD_LENGTH = 3
TS_CONFIG = "english"

_NON_WORD = re.compile(r"[^\w\s]")


def extract_keywords(text: str) -> List[str]:
    """
    Lowercases, strips punctuation, splits on whitespace and drops short
    tokens and stop words. At most the first ten keywords are returned.
    """
    words = _NON_WORD.sub(" ", text.lower()).split()
    keywords = [word for word in words if len(word) >= MIN_KEYWORD_LENGTH and word not in STOP_WORDS]
    return keywords[:MAX_KEYWORDS]


def build_ts_query(keywords: List[str]) -> str:
    """Disjunctive tsquery over the keyword set, e.g. `reset | password`."""
    return " | ".join(keywords)


class FAQService:
    """
    Knowledge-base access: hybrid retrieval for chat turns plus the
    administrative operations on FAQ entries.
    """

    def __init__(self, db: Session, cache: Optional[CacheService] = None, max_results: int = 5):
        self.db = db
        self.cache = cache or CacheService()
        self.max_results = max_results

    # --- Retrieval ---

    async def retrieve_relevant_faqs(self, user_message: str, limit: Optional[int] = None) -> List[FAQRead]:
        """
        Returns up to `limit` active FAQs relevant to the message, best first.
        Best-effort: storage failures are logged and yield an empty list.
        """
        limit = self._resolve_limit(limit)
        if limit <= 0:
            return []

        cached = await self.cache.get_cached_faqs(user_message, limit)
        if cached is not None:
            try:
                return [FAQRead.model_validate(item) for item in cached][:limit]
            except ValueError as e:
                logger.warning(f"Discarding malformed cached FAQs: {e}")

        # Search at least max_results rows so the cached entry serves any smaller limit
        fetch_limit = max(limit, self.max_results)
        try:
            faqs = self.search_hybrid(user_message, fetch_limit)
        except StorageError as e:
            logger.error(f"Error retrieving relevant FAQs: {e.details}")
            return []

        await self.cache.cache_faqs(user_message, [faq.model_dump(mode="json") for faq in faqs], fetch_limit)
        logger.debug(f"FAQs retrieved for user message: length={len(user_message)} count={len(faqs)}")
        return faqs[:limit]

    def _resolve_limit(self, limit: Optional[int]) -> int:
        return self.max_results if limit is None else limit

    def build_hybrid_query(self, keywords: List[str], limit: int) -> Select:
        document = func.to_tsvector(TS_CONFIG, FAQ.question + literal(" ") + FAQ.answer)
        ts_query = func.to_tsquery(TS_CONFIG, build_ts_query(keywords))
        rank = func.ts_rank(document, ts_query).label("rank")
        return (
            select(FAQ, rank)
            .where(FAQ.is_active.is_(True))
            .where(or_(document.op("@@")(ts_query), FAQ.keywords.overlap(keywords)))
            .order_by(desc("rank"), FAQ.priority.desc(), FAQ.created_at.desc())
            .limit(limit)
        )

    def search_hybrid(self, user_message: str, limit: Optional[int] = None) -> List[FAQRead]:
        """
        Full-text match on question+answer OR keyword-tag overlap, ranked by
        text relevance then priority then recency. Raises StorageError.
        """
        limit = self._resolve_limit(limit)
        if limit <= 0:
            return []
        keywords = extract_keywords(user_message)
        if not keywords:
            logger.debug("No keywords extracted from message; skipping FAQ search.")
            return []

        try:
            rows = self.db.execute(self.build_hybrid_query(keywords, limit)).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error in hybrid search for keywords {keywords}: {e}", exc_info=True)
            raise StorageError("Failed to search FAQs", e) from e

        logger.debug(f"Hybrid search completed: keywords={keywords} results={len(rows)}")
        return [FAQRead.model_validate(row[0]) for row in rows[:limit]]

    def search_by_keywords(self, keywords: List[str], limit: Optional[int] = None) -> List[FAQRead]:
        """Active FAQs whose tags contain every keyword, by priority then recency."""
        limit = self._resolve_limit(limit)
        if limit <= 0:
            return []
        try:
            faqs = self.db.scalars(
                select(FAQ)
                .where(FAQ.is_active.is_(True))
                .where(FAQ.keywords.contains(keywords))
                .order_by(FAQ.priority.desc(), FAQ.created_at.desc())
                .limit(limit)
            ).all()
            return [FAQRead.model_validate(faq) for faq in faqs]
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error searching FAQs by keywords {keywords}: {e}", exc_info=True)
            return []

    def get_by_category(self, category: str, limit: int = 10) -> List[FAQRead]:
        try:
            faqs = self.db.scalars(
                select(FAQ)
                .where(FAQ.is_active.is_(True), FAQ.category == category)
                .order_by(FAQ.priority.desc(), FAQ.created_at.desc())
                .limit(limit)
            ).all()
            return [FAQRead.model_validate(faq) for faq in faqs]
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error getting FAQs by category '{category}': {e}", exc_info=True)
            return []

    def get_all_active(self) -> List[FAQRead]:
        try:
            faqs = self.db.scalars(
                select(FAQ)
                .where(FAQ.is_active.is_(True))
                .order_by(FAQ.priority.desc(), FAQ.created_at.desc())
            ).all()
            return [FAQRead.model_validate(faq) for faq in faqs]
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error getting all active FAQs: {e}", exc_info=True)
            return []

    # --- Administration ---

    def create_faq(self, faq_data: FAQCreateSchema) -> FAQRead:
        try:
            db_faq = FAQ(
                question=faq_data.question,
                answer=faq_data.answer,
                category=faq_data.category,
                keywords=[keyword.lower() for keyword in faq_data.keywords],
                priority=faq_data.priority,
            )
            self.db.add(db_faq)
            self.db.commit()
            self.db.refresh(db_faq)
            logger.info(f"FAQ created: id={db_faq.id} category={db_faq.category}")
            return FAQRead.model_validate(db_faq)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error creating FAQ: {e}", exc_info=True)
            raise StorageError("Failed to create FAQ", e) from e

    def _get_or_404(self, faq_id: uuid.UUID) -> FAQ:
        db_faq = self.db.get(FAQ, faq_id)
        if db_faq is None:
            raise NotFoundError("FAQ", str(faq_id))
        return db_faq

    def get_faq(self, faq_id: uuid.UUID) -> FAQRead:
        try:
            return FAQRead.model_validate(self._get_or_404(faq_id))
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error finding FAQ {faq_id}: {e}", exc_info=True)
            raise StorageError("Failed to find FAQ", e) from e

    def update_faq(self, faq_id: uuid.UUID, updates: FAQUpdateSchema) -> FAQRead:
        try:
            db_faq = self._get_or_404(faq_id)
            for field, value in updates.model_dump(exclude_unset=True).items():
                if field == "keywords" and value is not None:
                    value = [keyword.lower() for keyword in value]
                setattr(db_faq, field, value)
            self.db.commit()
            self.db.refresh(db_faq)
            logger.info(f"FAQ updated: id={faq_id}")
            return FAQRead.model_validate(db_faq)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error updating FAQ {faq_id}: {e}", exc_info=True)
            raise StorageError("Failed to update FAQ", e) from e

    def deactivate_faq(self, faq_id: uuid.UUID) -> None:
        try:
            db_faq = self._get_or_404(faq_id)
            db_faq.is_active = False
            self.db.commit()
            logger.info(f"FAQ deactivated: id={faq_id}")
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error deactivating FAQ {faq_id}: {e}", exc_info=True)
            raise StorageError("Failed to deactivate FAQ", e) from e
