"""Error taxonomy shared by the facade, coordinator, and database backends.

Each error carries the HTTP status the API layer answers with. Database errors
are caught by the coordinator and turned into FAILED tasks, so their status code
only matters if one escapes by mistake.
"""

from __future__ import annotations


class AgentError(Exception):
    """Base class for every error the agent raises on purpose."""

    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class Unauthorized(AgentError):
    """Missing, malformed, or mismatched credential."""

    status_code = 401


class BadRequest(AgentError):
    """Missing request body or task id."""

    status_code = 400


class NotFound(AgentError):
    """Unknown task id."""

    status_code = 404


class DatabaseFailure(AgentError):
    """Any error talking to the database, driver timeouts included."""


class InternalState(AgentError):
    """An operation presumed an established database session that does not exist."""
