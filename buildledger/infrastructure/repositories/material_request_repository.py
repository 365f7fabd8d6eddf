"""
Material Request Repository - Flags requests whose order lines were rejected.
"""
from typing import Iterable

from sqlalchemy import update
from sqlalchemy.orm import Session

from buildledger.models import MaterialRequest, utcnow
from .base_repository import BaseRepository


class MaterialRequestRepository(BaseRepository[MaterialRequest]):
    """Repository for MaterialRequest entities."""

    def __init__(self, session: Session):
        super().__init__(session, MaterialRequest)

    def flag_for_reassignment(self, project_id: int, request_ids: Iterable, reason: str) -> int:
        """
        Mark material requests as needing a new supplier.

        Ids that are not integers (free-form line ids) are ignored.

        Returns:
            Number of requests flagged
        """
        ids = []
        for request_id in request_ids:
            try:
                ids.append(int(request_id))
            except (TypeError, ValueError):
                continue
        if not ids:
            return 0
        now = utcnow()
        result = self.session.execute(
            update(MaterialRequest)
            .where(MaterialRequest.project_id == project_id, MaterialRequest.id.in_(ids))
            .values(
                needs_reassignment=True,
                reassignment_reason=reason,
                reassignment_flagged_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
