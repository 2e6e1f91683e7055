"""Repository for JobSchedule persistence."""

from sqlalchemy import select

from invoice_reminder.dal.base import BaseRepository, translate_query_errors
from invoice_reminder.storage.entities.job_schedule import JobSchedule


class JobScheduleRepository(BaseRepository[JobSchedule]):
    """Repository for JobSchedule CRUD operations."""

    model = JobSchedule

    async def get_by_user_id(self, user_id: str) -> list[JobSchedule]:
        """List every schedule owned by a user, oldest first."""
        stmt = (
            select(JobSchedule)
            .where(JobSchedule.user_id == user_id)
            .order_by(JobSchedule.created_at)
        )
        with translate_query_errors("JobScheduleRepository.get_by_user_id"):
            result = await self.session.execute(stmt)
            return list(result.scalars().all())
