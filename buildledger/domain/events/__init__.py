"""
Domain Events - Background recalculation triggered by financial mutations.
"""
from .dispatcher import RecalculationDispatcher, get_recalculation_dispatcher

__all__ = ['RecalculationDispatcher', 'get_recalculation_dispatcher']
