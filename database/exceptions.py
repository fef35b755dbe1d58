"""Database exceptions."""

class DatabaseError(Exception):
    """Raised when a database operation fails unexpectedly."""
    pass

class DatabaseSchemaError(DatabaseError):
    """Raised when schema files are invalid or migrations fail."""
    pass
