"""Error taxonomy for the memory engines."""


class AgentMemoryError(Exception):
    """Base exception for memory operations."""
    pass


class ValidationError(AgentMemoryError):
    """Content could not be interpreted as storable memory."""
    pass


class PersistenceError(AgentMemoryError):
    """Query or I/O failure in the persistence store."""
    pass


class EmbeddingError(AgentMemoryError):
    """Embedding provider failed or returned a malformed vector."""
    pass


class NotFoundError(AgentMemoryError):
    """Requested record does not exist for this agent/user pair."""
    pass
