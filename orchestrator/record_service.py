import logging

from sqlalchemy import update

from orchestrator.database import SessionLocal
from orchestrator.errors import ValidationError
from orchestrator.models import GenerationRecord

logger = logging.getLogger(__name__)


class RecordNotFoundError(ValidationError):
    error_kind = "record_not_found"
    http_status = 404


class GenerationRecordService:
    """Counters and flags a user can change on a finished generation."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def _increment(self, record_id: int, user_id: int, column) -> GenerationRecord:
        with self.session_factory() as session:
            result = session.execute(
                update(GenerationRecord)
                .where(GenerationRecord.id == record_id, GenerationRecord.user_id == user_id)
                .values({column: column + 1})
            )
            if result.rowcount != 1:
                session.rollback()
                raise RecordNotFoundError(f"Generation {record_id} not found")
            session.commit()
            return session.get(GenerationRecord, record_id)

    def track_download(self, record_id: int, user_id: int) -> GenerationRecord:
        return self._increment(record_id, user_id, GenerationRecord.download_count)

    def track_share(self, record_id: int, user_id: int) -> GenerationRecord:
        return self._increment(record_id, user_id, GenerationRecord.share_count)

    def toggle_favorite(self, record_id: int, user_id: int) -> GenerationRecord:
        with self.session_factory() as session:
            record = session.get(GenerationRecord, record_id)
            if record is None or record.user_id != user_id:
                raise RecordNotFoundError(f"Generation {record_id} not found")
            record.is_favorite = not record.is_favorite
            session.commit()
            logger.info("Generation %s favorite=%s", record_id, record.is_favorite)
            return record
