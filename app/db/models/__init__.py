"""Database Models Package"""

from app.db.models.idempotency import IdempotencyRecord

__all__ = [
    "IdempotencyRecord",
]
