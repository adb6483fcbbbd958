"""Idempotency store exceptions."""


class IdempotencyStoreError(Exception):
    """Base class for idempotency store failures."""


class DuplicateIdempotencyKeyError(IdempotencyStoreError):
    """A live record already holds this idempotency key."""

    def __init__(self, key: str):
        super().__init__(f"Idempotency record already exists for key {key}")
        self.key = key
