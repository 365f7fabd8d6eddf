"""
Base Repository - Shared data access for project-scoped records.

Most finance records belong to a project and are soft-deleted through a
deleted_at column; the helpers here hide both conventions.
"""
from typing import Callable, Generic, TypeVar, List, Optional, Type
from sqlalchemy.orm import Session

from buildledger.models import Base
from buildledger.domain.exceptions import DomainError

T = TypeVar('T', bound=Base)


class BaseRepository(Generic[T]):
    """
    Data access shared by the aggregate repositories.

    Subclasses set ``not_found`` to the DomainError raised by get_or_raise
    when a lookup misses.
    """

    not_found: Optional[Callable[[int], DomainError]] = None

    def __init__(self, session: Session, model_class: Type[T]):
        self.session = session
        self.model_class = model_class

    def _live(self, query):
        """Exclude soft-deleted rows when the model supports soft deletion."""
        if hasattr(self.model_class, 'deleted_at'):
            query = query.filter(self.model_class.deleted_at.is_(None))
        return query

    def get_active(self, entity_id: int) -> Optional[T]:
        """Retrieve an entity by primary key unless it has been soft-deleted."""
        return self._live(self.session.query(self.model_class).filter(
            self.model_class.id == entity_id
        )).first()

    def get_or_raise(self, entity_id: int) -> T:
        """
        Retrieve a live entity or raise the repository's not-found error.

        Raises:
            DomainError: The subclass's not_found error
        """
        entity = self.get_active(entity_id)
        if entity is None:
            raise self.not_found(entity_id)
        return entity

    def list_for_project(self, project_id: int, fresh: bool = False) -> List[T]:
        """
        All live entities belonging to a project, in primary key order.

        Args:
            project_id: Owning project
            fresh: Overwrite identity-map state with current database values
        """
        query = self._live(self.session.query(self.model_class).filter(
            self.model_class.project_id == project_id
        )).order_by(self.model_class.id)
        if fresh:
            query = query.populate_existing()
        return query.all()

    def add(self, entity: T) -> T:
        """Add a new entity to the session."""
        self.session.add(entity)
        return entity
