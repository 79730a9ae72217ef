"""Per-user rate limits for model-backed operations."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from insights.domain.errors import RateLimitedError
from insights.domain.models import UsageRecord
from insights.repos.memory import MessageRepository, UsageRepository

logger = logging.getLogger(__name__)


class RateLimiter:
    """Two limits: requests per window for explicit extraction, and processed
    messages per day for opportunistic per-message extraction."""

    def __init__(
        self,
        usage_repo: UsageRepository,
        message_repo: MessageRepository,
        request_limit: int,
        window: timedelta,
        daily_message_limit: int,
    ) -> None:
        self.usage_repo = usage_repo
        self.message_repo = message_repo
        self.request_limit = request_limit
        self.window = window
        self.daily_message_limit = daily_message_limit

    def check_request(self, user_id: str, operation: str, now: datetime) -> int:
        """Return the current count, raising once the limit has been reached."""
        count = self.usage_repo.count_since(user_id, operation, now - self.window)
        if count >= self.request_limit:
            logger.info(
                "Rate limit hit for %s on %s: %d/%d",
                user_id,
                operation,
                count,
                self.request_limit,
            )
            raise RateLimitedError(count=count, limit=self.request_limit)
        return count

    def acquire(self, user_id: str, operation: str, now: datetime) -> int:
        """Check the limit and take a slot in one step; returns the count before it.

        Nothing may be awaited between the check and the record, otherwise
        concurrent calls for the same user would all see the old count. Calls
        that fail later keep their slot.
        """
        count = self.check_request(user_id, operation, now)
        self.record(user_id, operation, now)
        return count

    def record(self, user_id: str, operation: str, now: datetime) -> None:
        self.usage_repo.add(UsageRecord(user_id=user_id, operation=operation, created_at=now))

    def check_daily_messages(self, sender_id: str, now: datetime) -> int:
        count = self.message_repo.count_processed_since(sender_id, now - timedelta(days=1))
        if count >= self.daily_message_limit:
            logger.info(
                "Daily message limit hit for %s: %d/%d",
                sender_id,
                count,
                self.daily_message_limit,
            )
            raise RateLimitedError(count=count, limit=self.daily_message_limit)
        return count
